"""
Configuration for the RecSync HTTP gateway.

Uses pydantic-settings for environment variable loading. Engine settings
(quiet period, storage, restore policy) come from EngineConfig.from_env().
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class GatewaySettings(BaseSettings):
    """Gateway configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Gateway bind host")
    port: int = Field(default=8090, description="Gateway bind port")

    # CORS settings
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    default_actor: str = Field(default="gateway:anonymous", description="Actor when X-Actor is absent")
    record_type: str = Field(default="participant", description="Record type edits are validated against")

    # History paging
    default_history_limit: int = Field(default=50, description="Default history entries per request")
    max_history_limit: int = Field(default=500, description="Maximum history entries per request")

    # Events kept per actor for GET /events
    event_buffer_size: int = Field(default=100, description="Session events kept per actor")

    model_config = {"env_prefix": "RECSYNC_GATEWAY_"}
