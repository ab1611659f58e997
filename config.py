from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    PORT: int = 3001
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database
    DATABASE_URL: str = "sqlite:///./checkout.db"
    DATABASE_ECHO: bool = False

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Checkout rules
    TRANSACTION_EXPIRY_DAYS: int = 7
    PAYMENT_EXPIRY_HOURS: int = 24
    PAYMENT_AMOUNT_TOLERANCE: float = 0.01
    IDR_PER_USD: int = 15000
    PRODUCT_TERM_YEARS: int = 1

    # Cron / admin credentials
    CRON_API_KEY: str = ""
    ADMIN_API_KEY: str = ""
    SWEEPER_RESULT_LIMIT: int = 50

    # Payments
    PAYMENT_WEBHOOK_SECRET: str = ""
    ENABLE_SIMULATED_PAYMENTS: bool = False
    SIMULATED_PAYMENT_DELAY_SECONDS: float = 3.0

    # WhatsApp gateway
    WHATSAPP_SERVER_API: str = "https://wa.genfity.com"
    WHATSAPP_USER_TOKEN: str = ""
    WHATSAPP_TIMEOUT_SECONDS: float = 30.0

    # Email
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASS: str = ""
    MAIL_FROM: str = ""
    APP_NAME: str = "Genfity"

    # Notification outbox
    NOTIFICATION_MAX_ATTEMPTS: int = 5
    NOTIFICATION_BACKOFF_SECONDS: int = 60

    # Accounts
    OTP_TTL_MINUTES: int = 60

    @property
    def allowed_origins(self) -> list:
        return [
            origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()
        ]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
