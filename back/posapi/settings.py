from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class TotalsValidation(str, Enum):
    off = "off"
    warn = "warn"  # Log mismatches, persist anyway
    reject = "reject"


class Settings(BaseSettings):
    """
    App configuration.

    Read from `config.env` (non-dot env file) and `.env` at the repository
    root, falling back to the process environment.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="pos", validation_alias="DB_USER")
    db_password: str = Field(default="pos", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="pos", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; takes precedence over the DB_* parts when set
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")

    cors_origins: str = Field(
        default="http://localhost:4200",
        validation_alias="CORS_ORIGINS"
    )

    # Order ids starting with this prefix belong to orders the client has not saved yet
    temp_order_prefix: str = Field(default="temp-", validation_alias="TEMP_ORDER_PREFIX")
    order_number_prefix: str = Field(default="ORD", validation_alias="ORDER_NUMBER_PREFIX")
    totals_validation: TotalsValidation = Field(
        default=TotalsValidation.warn,
        validation_alias="TOTALS_VALIDATION"
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # psycopg driver (v3)
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
