from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = Field(default="Tour Coupons", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    database_url: str = Field(default="sqlite:///./coupons.db", alias="DATABASE_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    currency: str = Field(default="BRL", alias="CURRENCY")
    expiration_notice_days: int = Field(default=3, alias="EXPIRATION_NOTICE_DAYS")
    coupon_code_length: int = Field(default=8, alias="COUPON_CODE_LENGTH")
    max_validity_days: int = Field(default=730, alias="MAX_VALIDITY_DAYS")
    idempotency_ttl_seconds: int = Field(default=3600, alias="IDEMPOTENCY_TTL_SECONDS")

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
