"""Application configuration from environment variables."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

def _clean_str(value: str | None) -> str | None:
    if value is None:
        return None
    # Replace non-breaking spaces with normal spaces
    value = value.replace("\u00a0", " ").strip()
    return value or None



class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    PROJECT_NAME: str = "FrameVault"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    SITE_URL: str = "http://localhost:3000"


    # Database Settings
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "framevault"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    DATABASE_URL: str | None = None

    # Billing (Stripe)
    STRIPE_SECRET_KEY: str | None = Field(default=None, alias="STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET: str | None = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    BILLING_WEBHOOK_SECRET: str | None = Field(default=None, alias="BILLING_WEBHOOK_SECRET")

    STRIPE_PLUS_PRICE_ID: str = "price_1SBlKvBPPMheh1aapswc1eHs"
    STRIPE_PRO_PRICE_ID: str = "price_1SBlLXBPPMheh1aai1NiKNDA"

    # Page cache revalidation (frontend)
    REVALIDATE_URL: str | None = None
    REVALIDATE_SECRET: str | None = None
    REVALIDATE_TIMEOUT_SECONDS: float = 5.0

    # Plan sweep worker
    PLAN_SWEEP_BATCH_SIZE: int = 500
    PLAN_SWEEP_POLL_SECONDS: int = 300

    @field_validator(
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "BILLING_WEBHOOK_SECRET",
        "REVALIDATE_SECRET",
        mode="before",
    )
    @classmethod
    def clean_secret_strings(cls, v):
        return _clean_str(v)



    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def webhook_secret(self) -> str | None:
        """Billing-specific secret wins over the generic Stripe one."""
        return self.BILLING_WEBHOOK_SECRET or self.STRIPE_WEBHOOK_SECRET

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )


settings = Settings()
