from .engine import FarmerCheck, SweepReport, WeatherAlertEngine
from .results import Fallback, Ok, Skip
from .rules import evaluate
from .scheduler import Scheduler, build_scheduler

__version__ = "0.1.0"
