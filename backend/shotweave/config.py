"""Configuration management with YAML and environment variable support."""

from pathlib import Path
from typing import ClassVar, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class ContinuityConfig(BaseModel):
    """Shot generation defaults applied to new sessions."""

    default_model: str = "veo-3.1-generate-001"
    default_style_strength: float = Field(default=0.6, ge=0.0, le=1.0)
    style_strength_step: float = 0.1
    max_retries: int = Field(default=1, ge=0)
    style_threshold: float = 0.75
    identity_threshold: float = 0.6


class QualityGateConfig(BaseModel):
    """Quality gate scoring backends.

    disable_clip forces the histogram fallback (useful on CPU-only hosts
    without the vision extra installed).
    """

    disable_clip: bool = False
    enable_face_embedding: bool = True
    clip_model: str = "openai/clip-vit-base-patch32"
    histogram_bins: int = 8
    # HuggingFace depth-estimation model for scene proxies; luminance depth when unset
    depth_model: Optional[str] = None


class MediaConfig(BaseModel):
    """Remote media download settings."""

    download_timeout: float = 60.0
    max_download_attempts: int = 3
    tmp_dir: Path = Path("tmp")

    @field_validator("tmp_dir", mode="before")
    @classmethod
    def convert_tmp_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class StorageConfig(BaseModel):
    """Storage and database configuration.

    legacy_dual_write / legacy_read_fallback control the migration from the
    continuity-only session table to the unified sessions table. Turn both
    off once `shotweave backfill` reports nothing left to migrate.
    """

    database_url: str = "sqlite+aiosqlite:///./shotweave.db"
    legacy_dual_write: bool = True
    legacy_read_fallback: bool = True


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: SHOTWEAVE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="SHOTWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    continuity: ContinuityConfig = ContinuityConfig()
    quality: QualityGateConfig = QualityGateConfig()
    media: MediaConfig = MediaConfig()
    storage: StorageConfig = StorageConfig()
    server: ServerConfig = ServerConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. YAML file
        3. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


# Singleton instance
settings = Settings()
