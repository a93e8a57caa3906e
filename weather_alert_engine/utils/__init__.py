from .channels import ChannelOutcome, EmailChannel, InAppChannel
from .crop_mapping import CropMapper, current_season, normalize_state_name
from .open_meteo import OpenMeteoClient, describe_weather_code, weather_condition
from .store import MemoryStore, MongoStore, get_store
from .text_generator import ChatTextGenerator
