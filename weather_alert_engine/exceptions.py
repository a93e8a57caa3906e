"""Error taxonomy shared by the engine and its collaborator clients."""


class EngineError(Exception):
    """Base class for every error raised inside the engine."""


class WeatherSourceError(EngineError):
    """Transient weather/geocoding failure (timeout, 5xx, bad payload)."""


class LocationNotFoundError(WeatherSourceError):
    """The geocoder has no match for a place name."""


class TextGenerationError(EngineError):
    """The text generator timed out, refused, or returned unusable text."""


class StoreError(EngineError):
    """A read or write against the persistent store failed."""


class NotificationError(EngineError):
    """A delivery channel rejected or failed a send."""
