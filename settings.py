"""
Configuration management for the HTTP request classifier.
Uses Pydantic BaseSettings for environment variable support.
"""

import fnmatch
from typing import Optional, List, Literal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.model_config import DEFAULT_K


class Settings(BaseSettings):
    """
    Centralized configuration for the request classifier.
    All settings can be overridden via environment variables.
    """
    model_config = SettingsConfigDict(
        env_prefix='AI_BOUNCER_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
        protected_namespaces=('settings_',)
    )

    # =====================================================================
    # Detection Settings
    # =====================================================================
    enabled: bool = Field(
        default=True,
        description="Enable request classification"
    )
    threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Minimum confidence for an attack verdict to trigger the action"
    )
    default_k: int = Field(
        default=DEFAULT_K,
        ge=1,
        le=100,
        description="Number of nearest neighbors used for voting"
    )
    action: Literal["log", "block", "challenge"] = Field(
        default="log",
        description="Action taken when an attack is detected"
    )
    protected_paths: List[str] = Field(
        default_factory=list,
        description="Paths screened by the middleware (supports '*' wildcards)"
    )
    include_headers: List[str] = Field(
        default_factory=lambda: ["User-Agent", "Content-Type", "Accept", "Referer"],
        description="Request headers included in the canonical text"
    )
    max_body_size: int = Field(
        default=10_000,
        ge=0,
        description="Maximum request body analyzed (bytes)"
    )
    classification_timeout: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Seconds a screened request may wait for a verdict (None waits indefinitely)"
    )
    sensitive_params: List[str] = Field(
        default_factory=lambda: ["password", "password_confirmation", "authenticity_token"],
        description="Query parameters dropped before route-level screening"
    )

    # =====================================================================
    # Response Settings
    # =====================================================================
    block_status: int = Field(
        default=403,
        description="HTTP status returned by the block action"
    )
    block_body: str = Field(
        default="Forbidden",
        description="Body returned by the block action"
    )
    challenge_status: int = Field(
        default=429,
        description="HTTP status returned by the challenge action"
    )
    challenge_body: str = Field(
        default="Too Many Requests",
        description="Body returned by the challenge action"
    )
    challenge_redirect: Optional[str] = Field(
        default=None,
        description="Redirect target for the challenge action (e.g. a CAPTCHA page)"
    )

    # =====================================================================
    # Model Settings
    # =====================================================================
    model_path: str = Field(
        default="vendor/ai_bouncer",
        description="Directory holding vocabulary, weights and pattern vectors"
    )
    storage: Literal["memory", "database"] = Field(
        default="memory",
        description="Where attack pattern vectors are searched"
    )
    preload_model: bool = Field(
        default=True,
        description="Load the model at startup instead of on first request"
    )
    device: str = Field(
        default="cpu",
        description="Torch device for embedding inference"
    )

    # =====================================================================
    # Download Settings
    # =====================================================================
    auto_download: bool = Field(
        default=False,
        description="Download missing model files on load"
    )
    model_base_url: Optional[str] = Field(
        default=None,
        description="Base URL the model files are fetched from"
    )
    verbose_download: bool = Field(
        default=True,
        description="Log download progress"
    )
    download_timeout: int = Field(
        default=30,
        ge=1,
        le=600,
        description="Timeout for model downloads (seconds)"
    )

    # =====================================================================
    # Database Settings
    # =====================================================================
    database_path: str = Field(
        default="attack_patterns.db",
        description="SQLite database file for database storage mode"
    )

    # =====================================================================
    # Server Settings
    # =====================================================================
    host: str = Field(
        default="0.0.0.0",
        description="Server host"
    )
    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Server port"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # =====================================================================
    # Logging Settings
    # =====================================================================
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Log format (json, console)"
    )
    logs_dir: Optional[str] = Field(
        default="logs",
        description="Directory for attack log files (None disables file logging)"
    )

    # =====================================================================
    # Utility Methods
    # =====================================================================
    @property
    def database_storage(self) -> bool:
        return self.storage == "database"

    @property
    def memory_storage(self) -> bool:
        return self.storage == "memory"

    def is_protected_path(self, path: str) -> bool:
        """Check whether the middleware should screen this path."""
        for pattern in self.protected_paths:
            if "*" in pattern:
                if fnmatch.fnmatchcase(path, pattern):
                    return True
            elif path == pattern or path.startswith(f"{pattern}/"):
                return True
        return False

    @classmethod
    def from_yaml(cls, config_path: str) -> "Settings":
        """Load settings from YAML configuration file."""
        import yaml
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        return cls(**config)

    def to_yaml(self, config_path: str) -> None:
        """Save settings to YAML configuration file."""
        import yaml
        config = self.model_dump()
        with open(config_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False)


# Global settings instance
settings = Settings()


def reload_settings() -> Settings:
    """Reload settings from environment variables."""
    global settings
    settings = Settings()
    return settings
