from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from pipeline.utils.errors import ConfigError

DEFAULT_TAXONOMY_PATH = Path(__file__).parent / "data" / "taxonomy.yaml"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    database_url: str = Field(..., alias="DATABASE_URL")

    storage_endpoint_url: Optional[str] = Field(None, alias="STORAGE_ENDPOINT_URL")
    storage_bucket: Optional[str] = Field(None, alias="STORAGE_BUCKET")
    storage_access_key_id: Optional[str] = Field(None, alias="STORAGE_ACCESS_KEY_ID")
    storage_secret_access_key: Optional[str] = Field(None, alias="STORAGE_SECRET_ACCESS_KEY")
    storage_region: str = Field("auto", alias="STORAGE_REGION")
    storage_public_url: Optional[str] = Field(None, alias="STORAGE_PUBLIC_URL")
    storage_prefix: str = Field("cache", alias="STORAGE_PREFIX")

    image_cache_dir: str = Field("public/cache", alias="IMAGE_CACHE_DIR")
    image_min_bytes: int = Field(4000, alias="IMAGE_MIN_BYTES")
    image_timeout_s: float = Field(30.0, alias="IMAGE_TIMEOUT_S")

    fetch_timeout_s: float = Field(20.0, alias="FETCH_TIMEOUT_S")
    fetch_max_retries: int = Field(2, alias="FETCH_MAX_RETRIES")
    headless_timeout_s: float = Field(30.0, alias="HEADLESS_TIMEOUT_S")
    headless_settle_ms: int = Field(1200, alias="HEADLESS_SETTLE_MS")
    user_agent: str = Field(DEFAULT_USER_AGENT, alias="USER_AGENT")

    taxonomy_path: str = Field(str(DEFAULT_TAXONOMY_PATH), alias="TAXONOMY_PATH")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    def missing_storage_settings(self) -> list[str]:
        required = {
            "STORAGE_ENDPOINT_URL": self.storage_endpoint_url,
            "STORAGE_BUCKET": self.storage_bucket,
            "STORAGE_ACCESS_KEY_ID": self.storage_access_key_id,
            "STORAGE_SECRET_ACCESS_KEY": self.storage_secret_access_key,
            "STORAGE_PUBLIC_URL": self.storage_public_url,
        }
        return [name for name, value in required.items() if not value]

    def require_storage(self) -> None:
        """Fail fast when a job that writes to object storage is misconfigured."""
        missing = self.missing_storage_settings()
        if missing:
            raise ConfigError(
                "storage_not_configured",
                f"Object storage is not configured, missing: {', '.join(missing)}",
                {"missing": missing},
            )


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except ValidationError as exc:
        missing = [".".join(str(p) for p in err["loc"]) for err in exc.errors()]
        raise ConfigError(
            "invalid_settings",
            f"Invalid or missing configuration: {', '.join(missing)}",
            {"details": exc.errors()},
        ) from exc


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
