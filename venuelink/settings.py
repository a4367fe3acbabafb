import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

load_dotenv()


class Settings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # HTTP API
    api_base_url: str = Field(
        default="http://localhost:8000/api/v1", alias="API_BASE_URL"
    )
    api_timeout: float = Field(default=30.0, alias="API_TIMEOUT")

    # Retry policy
    retry_max: int = Field(default=3, alias="RETRY_MAX")
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=10.0, alias="RETRY_MAX_DELAY")

    # Response cache
    cache_ttl_seconds: float = Field(default=300.0, alias="CACHE_TTL_SECONDS")
    cache_max_size: int = Field(default=500, alias="CACHE_MAX_SIZE")

    # Request batching window
    batch_delay: float = Field(default=0.05, alias="BATCH_DELAY")

    # Realtime channel
    ws_base_url: str = Field(default="ws://localhost:8000", alias="WS_BASE_URL")
    ws_reconnect_attempts: int = Field(default=5, alias="WS_RECONNECT_ATTEMPTS")
    ws_reconnect_delay: float = Field(default=1.0, alias="WS_RECONNECT_DELAY")
    ws_reconnect_max_delay: float = Field(
        default=30.0, alias="WS_RECONNECT_MAX_DELAY"
    )
    ws_heartbeat_interval: float = Field(default=30.0, alias="WS_HEARTBEAT_INTERVAL")

    # Credentials
    token_refresh_margin: float = Field(default=60.0, alias="TOKEN_REFRESH_MARGIN")
    token_refresh_path: str = Field(default="/auth/refresh", alias="TOKEN_REFRESH_PATH")

    # Payload key naming on the wire and inside the application
    wire_key_case: str = Field(default="camel", alias="WIRE_KEY_CASE")
    internal_key_case: str = Field(default="snake", alias="INTERNAL_KEY_CASE")

    debug: bool = Field(default=False, alias="DEBUG")


global_settings = Settings.model_validate(dict(os.environ))
