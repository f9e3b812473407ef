import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class AppConfig:
    # Asterisk AMI Configuration
    ASTERISK_HOST: str = os.getenv("ASTERISK_HOST", "asterisk")
    ASTERISK_PORT: int = int(os.getenv("ASTERISK_PORT", 5038))
    ASTERISK_AMI_USER: str | None = os.getenv("ASTERISK_AMI_USER")
    ASTERISK_AMI_SECRET: str | None = os.getenv("ASTERISK_AMI_SECRET")

    # AMI session behaviour
    AMI_ACTION_TIMEOUT_S: float = float(os.getenv("AMI_ACTION_TIMEOUT_S", 30))
    AMI_CONNECT_TIMEOUT_S: float = float(os.getenv("AMI_CONNECT_TIMEOUT_S", 20))
    AMI_RECONNECT_DELAY_S: float = float(os.getenv("AMI_RECONNECT_DELAY_S", 5))
    AMI_MAX_RECONNECT_ATTEMPTS: int = int(os.getenv("AMI_MAX_RECONNECT_ATTEMPTS", 10))
    AMI_KEEPALIVE_INTERVAL_S: float = float(os.getenv("AMI_KEEPALIVE_INTERVAL_S", 30))
    AMI_ACTION_QUEUE_SIZE: int = int(os.getenv("AMI_ACTION_QUEUE_SIZE", 100))

    # Redis Configuration (event mirror for other processes)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", 6379))
    REDIS_DB: int = int(os.getenv("REDIS_DB", 0))
    REDIS_PASSWORD: str | None = os.getenv("REDIS_PASSWORD") # Optional
    REDIS_EVENTS_ENABLED: bool = _env_bool("REDIS_EVENTS_ENABLED", "true")
    REDIS_EVENTS_PREFIX: str = os.getenv("REDIS_EVENTS_PREFIX", "pbx:events")

    # WebSocket relay
    WS_SUBSCRIBER_QUEUE_SIZE: int = int(os.getenv("WS_SUBSCRIBER_QUEUE_SIZE", 256))

    # Application Settings
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_TO_FILE: bool = _env_bool("LOG_TO_FILE", "true")

    # Web Interface Configuration
    WEB_SERVER_HOST: str = os.getenv("WEB_SERVER_HOST", "0.0.0.0")
    WEB_SERVER_PORT: int = int(os.getenv("WEB_SERVER_PORT", 8080))

    def __init__(self):
        # Using print here as logger might not be set up when this class is imported/instantiated
        if not self.ASTERISK_AMI_USER or not self.ASTERISK_AMI_SECRET:
            print("WARNING: ASTERISK_AMI_USER or ASTERISK_AMI_SECRET is not set. AMI login will fail.", flush=True)

# Instantiate the config for easy import elsewhere
app_config = AppConfig()
