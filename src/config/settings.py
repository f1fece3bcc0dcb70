from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_NAME: str = "SSO Access Gateway"
    DEBUG: bool = False

    # Paths
    BASE_DIR: str = "."
    SQLITE_DB_PATH: str = "data/access.db"

    # Auth
    SECRET_KEY: str  # For session signing
    SESSION_MAX_AGE: int = 3600 * 24  # 24 hours
    SSO_PROVIDER: Literal["google", "azure"] = "google"
    GOOGLE_CLIENT_ID: str | None = None
    GOOGLE_CLIENT_SECRET: str | None = None
    AZURE_TENANT_ID: str | None = None
    AZURE_CLIENT_ID: str | None = None
    AZURE_CLIENT_SECRET: str | None = None

    # Directory conventions
    ADMIN_ROLE_NAME: str = "System Administrator"
    DEFAULT_ROLE_NAME: str = "System user"
    # Used when the identity provider omits organization claims
    DEFAULT_COMPANY_NAME: str = "Peepal"
    DEFAULT_OFFICE_LOCATION: str = "Aldershot"

    # Infrastructure
    LOG_LEVEL: str = "INFO"
    SEQ_URL: str | None = None
    SEQ_API_KEY: str | None = None

    model_config = SettingsConfigDict(env_file="secrets/.env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()
