# src/oshapp_bff/config.py

from pathlib import Path
from typing import Any, List, Union

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env is at the project root, two levels up from src/oshapp_bff/
CONFIG_FILE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT_DIR = CONFIG_FILE_DIR.parent.parent
ENV_FILE_PATH = PROJECT_ROOT_DIR / ".env"

if ENV_FILE_PATH.exists():
    load_dotenv(dotenv_path=ENV_FILE_PATH, override=True)
    print(f"OSHApp-BFF: Loaded .env file from: {ENV_FILE_PATH}")
else:
    print(f"OSHApp-BFF: .env file not found at {ENV_FILE_PATH}. Relying on environment variables.")


class Settings(BaseSettings):
    # === OSHApp REST backend ===
    # The old front-end read either variable and fell back to a literal per call site.
    API_URL: str = Field(
        "http://localhost:8081",
        validation_alias=AliasChoices("API_URL", "NEXT_PUBLIC_API_URL", "NEXT_PUBLIC_API_BASE"),
    )
    BACKEND_TIMEOUT_SECONDS: float = 10.0
    HEALTH_CHECK_TIMEOUT_SECONDS: float = 3.0

    # === Keycloak ===
    KEYCLOAK_BASE_URL: str = "http://localhost:8080"
    KEYCLOAK_REALM: str = "oshapp"
    KEYCLOAK_CLIENT_ID: str = "oshapp-frontend"
    KEYCLOAK_SCOPES: Union[str, List[str]] = ["openid", "profile", "email"]

    # === BFF ===
    BFF_REDIRECT_URI: str = "http://localhost:8000/auth/callback"
    POST_LOGOUT_REDIRECT_PATH: str = "/login"
    TOKEN_REFRESH_INTERVAL_SECONDS: int = 60
    TOKEN_MIN_VALIDITY_SECONDS: int = 30

    DEV_MODE: bool = False
    DEMO_MODE_ENABLED: bool = False

    # === Derived endpoints ===
    @property
    def ISSUER(self) -> str:
        return f"{self.KEYCLOAK_BASE_URL}/realms/{self.KEYCLOAK_REALM}"

    @property
    def AUTHORIZATION_ENDPOINT(self) -> str:
        return f"{self.ISSUER}/protocol/openid-connect/auth"

    @property
    def TOKEN_ENDPOINT(self) -> str:
        return f"{self.ISSUER}/protocol/openid-connect/token"

    @property
    def LOGOUT_ENDPOINT(self) -> str:
        return f"{self.ISSUER}/protocol/openid-connect/logout"

    @property
    def MEDICAL_VISITS_URL(self) -> str:
        return f"{self.API_URL}/api/v1/medical-visits"

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    @field_validator("API_URL", "KEYCLOAK_BASE_URL", mode="after")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("KEYCLOAK_SCOPES", mode="before")
    @classmethod
    def parse_comma_separated_scopes(cls, v: Any) -> List[str]:
        if isinstance(v, str):
            if not v.strip():
                return []
            return [scope.strip() for scope in v.split(",") if scope.strip()]
        if isinstance(v, list):
            return v
        raise TypeError("KEYCLOAK_SCOPES: Expected a comma-separated string or a list.")

    @model_validator(mode="after")
    def check_refresh_timing(self) -> "Settings":
        if self.TOKEN_REFRESH_INTERVAL_SECONDS <= 0:
            raise ValueError("TOKEN_REFRESH_INTERVAL_SECONDS must be greater than 0")
        if self.TOKEN_MIN_VALIDITY_SECONDS < 0:
            raise ValueError("TOKEN_MIN_VALIDITY_SECONDS must be >= 0")
        if self.TOKEN_MIN_VALIDITY_SECONDS >= self.TOKEN_REFRESH_INTERVAL_SECONDS:
            raise ValueError("TOKEN_MIN_VALIDITY_SECONDS must be lower than TOKEN_REFRESH_INTERVAL_SECONDS")
        if self.HEALTH_CHECK_TIMEOUT_SECONDS <= 0:
            raise ValueError("HEALTH_CHECK_TIMEOUT_SECONDS must be greater than 0")
        return self


try:
    settings = Settings()
    print(f"OSHApp-BFF: Backend API URL: {settings.API_URL}")
    print(f"OSHApp-BFF: Keycloak issuer: {settings.ISSUER}")
except Exception as e:
    print(f"OSHApp-BFF: Error instantiating Settings: {e}")
    raise
