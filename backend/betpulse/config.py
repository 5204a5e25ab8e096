from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"


class MpesaSettings(BaseSettings):
    """M-Pesa Daraja credentials and webhook endpoints (``MPESA_*`` variables)."""

    consumer_key: str = "your-consumer-key"
    consumer_secret: str = "your-consumer-secret"
    shortcode: str = "000000"
    passkey: str = "your-passkey"
    initiator_name: str = "apiInitiator"

    # Either a pre-computed credential, or the pair used to derive one
    security_credential: Optional[str] = None
    initiator_password: Optional[str] = None
    certificate_path: Optional[str] = None

    environment: Literal["sandbox", "production"] = "sandbox"
    callback_base_url: str = "http://localhost:8000"
    country_code: str = "258"
    timeout_seconds: float = 15.0

    stk_callback_url: Optional[str] = None
    c2b_confirmation_url: Optional[str] = None
    c2b_validation_url: Optional[str] = None
    b2c_result_url: Optional[str] = None
    b2c_queue_timeout_url: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="MPESA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def base_url(self) -> str:
        return PRODUCTION_BASE_URL if self.environment == "production" else SANDBOX_BASE_URL

    def _callback(self, override: Optional[str], endpoint: str) -> str:
        if override:
            return override
        return f"{self.callback_base_url.rstrip('/')}/api/finance/mpesa/{endpoint}"

    @property
    def stk_callback(self) -> str:
        return self._callback(self.stk_callback_url, "stk-callback")

    @property
    def c2b_confirmation(self) -> str:
        return self._callback(self.c2b_confirmation_url, "c2b-confirmation")

    @property
    def c2b_validation(self) -> str:
        return self._callback(self.c2b_validation_url, "c2b-validation")

    @property
    def b2c_result(self) -> str:
        return self._callback(self.b2c_result_url, "b2c-result")

    @property
    def b2c_queue_timeout(self) -> str:
        return self._callback(self.b2c_queue_timeout_url, "b2c-timeout")


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite+aiosqlite:///./betpulse.db"

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    events_channel: str = "betpulse:events"

    # Auth
    secret_key: str = "super-secret-key-change-me"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 720  # 12 hours

    # Frontend
    cors_origins: List[str] = ["http://localhost:5173"]

    # Payments
    mpesa: MpesaSettings = Field(default_factory=MpesaSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
