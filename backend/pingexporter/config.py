from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Ping Exporter"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # HTTP
    LISTEN: Optional[str] = None         # e.g. "127.0.0.1:9234"; CLI/config file override it
    METRICS_PATH: str = "/metrics"

    # Built-in probe defaults (lowest precedence)
    DEFAULT_INTERVAL: float = 1.0
    DEFAULT_TIMEOUT: float = 2.0
    DEFAULT_SOCKET_KIND: str = "dgram"   # "dgram" needs net.ipv4.ping_group_range, "raw" needs CAP_NET_RAW

    # ICMP
    PAYLOAD_SIZE: int = 16
    RECV_BUFFER_SIZE: int = 4096

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
