import os
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

_CONFIG_PATH = os.getenv("FLEETDNS_CONFIG", "config.toml")
_ENV_PATH = os.getenv("FLEETDNS_ENV", ".env")


class RotationSettings(BaseModel):
    tick_interval_seconds: int = 60
    health_freshness_seconds: int = 300
    schedule_debounce_seconds: int = 120
    schedule_timezone: str = "UTC"
    push_immediately: bool = True
    push_timeout_seconds: float = 60
    shutdown_grace_seconds: float = 5
    reconcile_interval_seconds: int = 300
    default_record_ttl: int = 60


class DNSSettings(BaseModel):
    provider_timeout_seconds: float = 30
    nameserver_lookup_timeout_seconds: float = 10
    # Empty means use the system resolver configuration
    resolver_nameservers: list[str] = []
    history_limit: int = 50


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        toml_file=_CONFIG_PATH,
        env_file=_ENV_PATH,
    )

    database_url: str
    master_token: str
    rotation: RotationSettings = Field(default_factory=RotationSettings)
    dns: DNSSettings = Field(default_factory=DNSSettings)

    host: str = "0.0.0.0"
    port: int = 5678
    logs_dir: Path = Field(default=Path("logs"))
    sql_echo: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Source order: init args > OS env > .env > config.toml > secrets
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


settings = Settings()  # type: ignore The service must not start without a valid configuration
