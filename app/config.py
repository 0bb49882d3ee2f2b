from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./booking_ledger.db",
        alias="DATABASE_URL"
    )

    # Staff endpoints (refund, staff cancel, booking view) require this key
    admin_api_key: str = Field(default="dev-admin-key", alias="ADMIN_API_KEY")

    # CORS - Frontend URLs from environment (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        alias="ALLOWED_ORIGINS"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=True, alias="LOG_JSON")

    # ==============================================
    # Payments
    # ==============================================
    # Single configured currency, amounts are always integer cents
    currency: str = Field(default="usd", alias="CURRENCY")

    # Provider used when a request does not name one: "stripe" or "vault"
    default_payment_provider: str = Field(default="stripe", alias="DEFAULT_PAYMENT_PROVIDER")

    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", alias="STRIPE_WEBHOOK_SECRET")

    # Vault gateway (transact/query API with customer vault)
    vault_api_url: str = Field(
        default="https://secure.magicpaygateway.com/api/transact.php",
        alias="VAULT_API_URL"
    )
    vault_query_url: str = Field(
        default="https://secure.magicpaygateway.com/api/query.php",
        alias="VAULT_QUERY_URL"
    )
    vault_security_key: str = Field(default="", alias="VAULT_SECURITY_KEY")
    vault_save_cards: bool = Field(default=True, alias="VAULT_SAVE_CARDS")

    payment_timeout_seconds: int = Field(default=30, alias="PAYMENT_TIMEOUT_SECONDS")

    # ==============================================
    # Scheduling service (owns the calendar slot)
    # ==============================================
    scheduling_base_url: str = Field(
        default="https://eu-central-1.hapio.net/v1",
        alias="SCHEDULING_BASE_URL"
    )
    scheduling_api_token: str = Field(default="", alias="SCHEDULING_API_TOKEN")
    scheduling_timeout_seconds: int = Field(default=15, alias="SCHEDULING_TIMEOUT_SECONDS")

    # ==============================================
    # Side effects (best-effort, after commit)
    # ==============================================
    calendar_enabled: bool = Field(default=False, alias="CALENDAR_ENABLED")
    calendar_base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        alias="CALENDAR_BASE_URL"
    )
    calendar_access_token: str = Field(default="", alias="CALENDAR_ACCESS_TOKEN")
    display_timezone: str = Field(default="America/New_York", alias="DISPLAY_TIMEZONE")

    crm_enabled: bool = Field(default=False, alias="CRM_ENABLED")
    email_enabled: bool = Field(default=False, alias="EMAIL_ENABLED")
    brevo_base_url: str = Field(default="https://api.brevo.com/v3", alias="BREVO_BASE_URL")
    brevo_api_key: str = Field(default="", alias="BREVO_API_KEY")
    brevo_list_id: int = Field(default=0, alias="BREVO_LIST_ID")
    email_sender_address: str = Field(default="bookings@example.com", alias="EMAIL_SENDER_ADDRESS")
    email_sender_name: str = Field(default="Bookings", alias="EMAIL_SENDER_NAME")
    side_effect_timeout_seconds: int = Field(default=10, alias="SIDE_EFFECT_TIMEOUT_SECONDS")

    # ==============================================
    # Discounts
    # ==============================================
    # Code that marks the customer's one-per-customer welcome offer as used
    welcome_offer_code: str = Field(default="WELCOME15", alias="WELCOME_OFFER_CODE")

    @field_validator('default_payment_provider')
    @classmethod
    def validate_provider(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("stripe", "vault"):
            raise ValueError("DEFAULT_PAYMENT_PROVIDER must be 'stripe' or 'vault'")
        return v

    @field_validator('currency')
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from environment variable"""
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return origins

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
