from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "qbo-sync"
    app_version: str = "0.1.0"
    environment: Literal["sandbox", "prod"] = Field(default="sandbox", alias="ENV")

    api_key: str = Field(..., alias="API_KEY")
    fernet_key: str = Field(..., alias="FERNET_KEY")

    qbo_client_id: str = Field(..., alias="QBO_CLIENT_ID")
    qbo_client_secret: str = Field(..., alias="QBO_CLIENT_SECRET")
    qbo_redirect_uri: HttpUrl = Field(..., alias="QBO_REDIRECT_URI")
    qbo_minor_version: str = Field(default="65", alias="QBO_MINOR_VERSION")

    # Chart-of-accounts ids used when a local row carries no account of its own.
    qbo_expense_account_id: str = Field(default="1", alias="QBO_EXPENSE_ACCOUNT_ID")
    qbo_income_item_id: str = Field(default="1", alias="QBO_INCOME_ITEM_ID")
    qbo_bank_account_id: Optional[str] = Field(default=None, alias="QBO_BANK_ACCOUNT_ID")

    database_url: str = Field(..., alias="DATABASE_URL")

    http_timeout_seconds: float = Field(default=10.0, alias="HTTP_TIMEOUT_SECONDS")
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_max_wait_seconds: float = Field(default=15.0, alias="RETRY_MAX_WAIT")
    token_refresh_margin_seconds: int = Field(default=60, ge=0, alias="TOKEN_REFRESH_MARGIN_SECONDS")

    allow_docs_without_auth: bool = Field(default=True, alias="ALLOW_DOCS_WITHOUT_AUTH")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
