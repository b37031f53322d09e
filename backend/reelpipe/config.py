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
        # Load from config.yaml in current directory
        yaml_path = Path("config.yaml")
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class StorageConfig(BaseModel):
    """Storage and database configuration."""

    database_url: str = "sqlite+aiosqlite:///reelpipe.db"
    artifacts_dir: Path = Path("artifacts")
    music_library_dir: Optional[Path] = None

    @field_validator("artifacts_dir", "music_library_dir", mode="before")
    @classmethod
    def convert_dir_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class ProvidersConfig(BaseModel):
    """OpenAI-compatible provider endpoints for speech, alignment and images.

    api_key is optional so dry-run renders work without credentials.
    """

    api_base_url: str = "https://api.openai.com/v1"
    api_key: Optional[str] = None
    tts_model: str = "tts-1"
    asr_model: str = "whisper-1"
    image_model: str = "dall-e-3"
    image_size: str = "1024x1792"
    request_timeout_sec: float = 120.0


class PipelineConfig(BaseModel):
    """Pipeline composition parameters."""

    reuse_artifacts: bool = True
    default_voice: str = "alloy"
    default_niche_pack: str = "facts"


class RetryConfig(BaseModel):
    """Per-step retry policy for transient adapter failures."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay_sec: float = Field(default=2.0, ge=0)
    max_delay_sec: float = Field(default=60.0, ge=0)


class RunnerConfig(BaseModel):
    """Worker pool and adapter timeout configuration."""

    max_concurrent_runs: int = Field(default=2, ge=1)
    adapter_timeout_sec: float = Field(default=300.0, gt=0)
    encode_timeout_sec: float = Field(default=1800.0, gt=0)
    garbage_retention_days: int = Field(default=14, ge=0)


class RenderConfig(BaseModel):
    """Output geometry and encoder configuration."""

    width: int = 1080
    height: int = 1920
    fps: int = 30
    music_volume: float = 0.15
    thumbnail_offset_sec: float = 0.0
    dry_run: bool = False
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"


class QaConfig(BaseModel):
    """Checks applied to the final video before export."""

    enabled: bool = True
    width: int = 1080
    height: int = 1920
    max_file_size_mb: float = Field(default=287.0, gt=0)
    max_silence_sec: float = Field(default=2.0, gt=0)


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: REELPIPE_, delimiter: __)
    2. YAML file (config.yaml)
    3. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="REELPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    render: RenderConfig = Field(default_factory=RenderConfig)
    qa: QaConfig = Field(default_factory=QaConfig)

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
        1. Init settings (explicit keyword arguments, used by tests)
        2. Environment variables
        3. YAML file
        """
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
        )


# Singleton instance
settings = Settings()
