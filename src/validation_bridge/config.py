# src/validation_bridge/config.py

import logging
from pathlib import Path
from typing import Any, List, Optional, Union

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger(__name__)

# .env is at the project root, two levels up from src/validation_bridge/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=False)
    log.info("Loaded .env file from %s", ENV_FILE_PATH)

DEV_SESSION_SECRET = "dev-secret-key-not-for-production"


def _split_list(v: Any, name: str, separators: str = ",") -> List[str]:
    if isinstance(v, str):
        for sep in separators[1:]:
            v = v.replace(sep, separators[0])
        return [item.strip() for item in v.split(separators[0]) if item.strip()]
    if isinstance(v, (list, tuple)):
        return [str(item) for item in v]
    raise TypeError(f"{name}: Expected a comma-separated string or a list, got {type(v)}")


class Settings(BaseSettings):
    # === Environment ===
    ENVIRONMENT: str = "development"

    # === Salesforce Connected App ===
    CLIENT_ID: str
    CLIENT_SECRET: str
    REDIRECT_URI: Optional[str] = None
    OAUTH_SCOPES: Union[str, List[str]] = "api web refresh_token openid profile email"
    CUSTOM_DOMAIN_SUFFIX: str = ".salesforce.com"

    # === Server ===
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    APP_URL: Optional[str] = None
    FRONTEND_URL: str = "http://localhost:5173"
    TRUST_PROXY: bool = False
    # Allow Pydantic to see this as a string from the env first,
    # the validator converts it to List[str]
    CORS_ALLOWED_ORIGINS: Union[str, List[str]] = ""

    # === Session Management ===
    SESSION_SECRET_KEY: str = DEV_SESSION_SECRET
    SESSION_MAX_AGE: int = 60 * 60 * 24  # seconds
    REDIS_URL: Optional[str] = None
    REDIS_PREFIX: str = "sess:"
    REDIS_CONNECT_TIMEOUT: float = 10.0
    REDIS_MAX_RETRIES: int = 10
    SESSION_STORE_REQUIRED: bool = False

    # === Salesforce API ===
    TOOLING_API_VERSION: str = "v59.0"
    REQUEST_TIMEOUT: float = 30.0

    # === Rate Limiting (applies to /api/) ===
    RATE_LIMIT_MAX: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    LOG_LEVEL: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False
    )

    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def SESSION_COOKIE_SECURE(self) -> bool:
        return self.IS_PRODUCTION

    @property
    def SESSION_COOKIE_SAMESITE(self) -> str:
        # Front end and API live on different sites in production
        return "none" if self.IS_PRODUCTION else "lax"

    @property
    def EFFECTIVE_LOG_LEVEL(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return "INFO" if self.IS_PRODUCTION else "DEBUG"

    @field_validator("OAUTH_SCOPES", mode="before")
    @classmethod
    def parse_scopes(cls, v: Any) -> List[str]:
        return _split_list(v, "OAUTH_SCOPES", separators=", ")

    @field_validator("CORS_ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_origins(cls, v: Any) -> List[str]:
        return [origin.rstrip("/") for origin in _split_list(v, "CORS_ALLOWED_ORIGINS")]

    @field_validator("FRONTEND_URL", "APP_URL")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        return v.rstrip("/") if v else v

    @model_validator(mode="after")
    def derive_defaults(self) -> "Settings":
        if not self.APP_URL and not self.IS_PRODUCTION:
            self.APP_URL = f"http://localhost:{self.PORT}"
        if not self.REDIRECT_URI:
            if not self.APP_URL:
                raise ValueError("REDIRECT_URI is required (or set APP_URL to derive it).")
            self.REDIRECT_URI = f"{self.APP_URL}/oauth/callback"
        if self.IS_PRODUCTION and self.SESSION_SECRET_KEY == DEV_SESSION_SECRET:
            raise ValueError("SESSION_SECRET_KEY must be set in production.")
        if self.FRONTEND_URL not in self.CORS_ALLOWED_ORIGINS:
            self.CORS_ALLOWED_ORIGINS = [self.FRONTEND_URL, *self.CORS_ALLOWED_ORIGINS]
        return self


try:
    settings = Settings()
except Exception as e:
    log.error("Error instantiating Settings: %s", e)
    raise
