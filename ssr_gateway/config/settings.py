"""
Application Settings
===================

Main application settings and environment configuration using Pydantic Settings.
Supports development, testing, and production environments.
"""

from typing import Optional, TYPE_CHECKING
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from ssr_gateway.models.schemas import GatewayOptions


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    # Application Configuration
    app_name: str = Field(default="SSR Gateway", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(
        default="development", description="Environment: development, testing, production"
    )
    debug: bool = Field(default=True, description="Debug mode")

    # Server Configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # Static Asset Configuration
    public_path: str = Field(default="/public", description="URL prefix for static assets")
    static_dir: Path = Field(default=Path("./public"), description="Static asset directory")

    # Page Module Configuration
    source_dir: Path = Field(default=Path("./"), description="Root directory for page modules")
    pages_dir: str = Field(default="pages", description="Page directory relative to source_dir")
    index_page: str = Field(default="index", description="Page rendered for the root URL")

    # Rendering Configuration
    render_timeout: float = Field(default=5.0, description="Render timeout in seconds")
    sandbox_pool_size: int = Field(default=4, description="Sandbox context pool size")
    sandbox_start_method: str = Field(
        default="spawn", description="Process start method for sandbox contexts"
    )
    max_renders_per_context: int = Field(
        default=500, description="Renders served by a sandbox context before it is recycled"
    )
    sandbox_warm_start: bool = Field(
        default=True, description="Start all sandbox contexts when the application starts"
    )
    fingerprint: str = Field(default="mtime", description="Module cache fingerprint: mtime or hash")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Optional rotating log file")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "testing", "production"}
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("fingerprint")
    @classmethod
    def validate_fingerprint(cls, v: str) -> str:
        """Validate fingerprint strategy."""
        allowed = {"mtime", "hash"}
        if v.lower() not in allowed:
            raise ValueError(f"Fingerprint must be one of: {allowed}")
        return v.lower()

    def gateway_options(self) -> "GatewayOptions":
        """Build gateway construction options from these settings."""
        from ssr_gateway.models.schemas import GatewayOptions

        return GatewayOptions(
            public_path=self.public_path,
            source_dir=self.source_dir,
            render_timeout=self.render_timeout,
            pool_size=self.sandbox_pool_size,
            start_method=self.sandbox_start_method,
            max_renders_per_context=self.max_renders_per_context,
            fingerprint=self.fingerprint,
        )

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, env_prefix="SSR_GATEWAY_"
    )


# Global settings instance - will be initialized when needed
settings = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global settings
    settings = Settings()
    return settings
