"""
Configuration for the kvledger admin API.

Uses pydantic-settings for environment variable loading. Store and
workflow settings come from LedgerConfig; this only covers the HTTP side.
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Admin API configuration loaded from environment."""

    host: str = Field(default="0.0.0.0", description="Admin API bind host")
    port: int = Field(default=8090, description="Admin API bind port")

    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins",
    )

    # Repair endpoints only report unless a request opts in
    default_dry_run: bool = Field(default=True, description="Repair dry run when not specified")

    model_config = {"env_prefix": "ADMIN_"}

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"
