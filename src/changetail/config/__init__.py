from .settings import CheckpointSettings, MongoSettings, Settings, StreamSettings, load_settings

__all__ = [
    "CheckpointSettings",
    "MongoSettings",
    "Settings",
    "StreamSettings",
    "load_settings",
]
