"""Configuration system using pydantic-settings with environment variable loading."""

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseSettings):
    """On-disk layout of the historical store."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    data_dir: str = "data/rates"
    index_interval: int = 64  # records between sparse index samples


class ConversionSettings(BaseSettings):
    """Conversion engine defaults.

    max_staleness_days applies to every conversion that does not set its own
    limit. None disables the check and keeps explicit dates exact-match.
    """

    model_config = SettingsConfigDict(env_prefix="CONVERT_")

    max_staleness_days: int | None = None


class IngestionSettings(BaseSettings):
    """Periodic ingestion loop parameters."""

    model_config = SettingsConfigDict(env_prefix="INGEST_")

    enabled: bool = True
    interval_seconds: int = 3600  # hourly, one record per day is kept
    timeout_seconds: float = 30.0  # per provider fetch + append


class ProviderSettings(BaseSettings):
    """Quote provider credentials and selection."""

    model_config = SettingsConfigDict(env_prefix="PROVIDER_")

    oxr_app_id: SecretStr = SecretStr("")
    oxr_base_url: str = "https://openexchangerates.org/api"
    forex_enabled: bool = True
    crypto_exchange: str = "bybit"
    crypto_enabled: bool = True


class ApiSettings(BaseSettings):
    """Query API server configuration."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    log_format: str = "console"  # or "json"
    storage: StorageSettings = StorageSettings()
    conversion: ConversionSettings = ConversionSettings()
    ingestion: IngestionSettings = IngestionSettings()
    providers: ProviderSettings = ProviderSettings()
    api: ApiSettings = ApiSettings()
