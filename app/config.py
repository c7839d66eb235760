from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # Database
    database_url: str = Field(..., alias='DATABASE_URL')
    database_auto_create: bool = Field(False, alias='DATABASE_AUTO_CREATE')

    # Web
    web_host: str = Field('127.0.0.1', alias='WEB_HOST')
    web_port: int = Field(9010, alias='WEB_PORT')
    web_secret: str = Field('change-me', alias='WEB_SECRET')
    public_base_url: str = Field('', alias='PUBLIC_BASE_URL')

    # Admin
    admin_username: str = Field('admin', alias='ADMIN_USERNAME')
    admin_password: str = Field('', alias='ADMIN_PASSWORD')

    # NanoBanana (images)
    nanobanana_api_key: str = Field('', alias='NANOBANANA_API_KEY')
    nanobanana_base_url: str = Field('https://api.nanobananaapi.ai/api/v1/nanobanana', alias='NANOBANANA_BASE_URL')

    # Kling through kie.ai (videos)
    kie_api_key: str = Field('', alias='KIE_API_KEY')
    kie_base_url: str = Field('https://api.kie.ai/api/v1', alias='KIE_BASE_URL')
    kling_model: str = Field('kling-2.6/image-to-video', alias='KLING_MODEL')

    # Provider webhooks
    webhook_hmac_key: str = Field('', alias='WEBHOOK_HMAC_KEY')
    webhook_require_signature: bool = Field(False, alias='WEBHOOK_REQUIRE_SIGNATURE')
    webhook_max_skew_seconds: int = Field(300, alias='WEBHOOK_MAX_SKEW_SECONDS')

    # SMS one-time passwords
    kavenegar_api_key: str = Field('', alias='KAVENEGAR_API_KEY')
    kavenegar_verify_template: str = Field('verify', alias='KAVENEGAR_VERIFY_TEMPLATE')
    otp_secret: str = Field('change-me', alias='OTP_SECRET')
    otp_ttl_seconds: int = Field(120, alias='OTP_TTL_SECONDS')
    otp_max_attempts: int = Field(5, alias='OTP_MAX_ATTEMPTS')
    otp_cooldown_seconds: int = Field(60, alias='OTP_COOLDOWN_SECONDS')

    # Zarinpal
    zarinpal_merchant_id: str = Field('', alias='ZARINPAL_MERCHANT_ID')
    zarinpal_sandbox: bool = Field(False, alias='ZARINPAL_SANDBOX')

    # Generation policy
    credits_per_image: int = Field(4, alias='CREDITS_PER_IMAGE')
    max_images_per_request: int = Field(4, alias='MAX_IMAGES_PER_REQUEST')
    max_prompt_length: int = Field(2500, alias='MAX_PROMPT_LENGTH')
    task_timeout_seconds: int = Field(900, alias='TASK_TIMEOUT_SECONDS')
    refund_on_fail: bool = Field(True, alias='REFUND_ON_FAIL')
    history_limit: int = Field(1000, alias='HISTORY_LIMIT')

    # Background reconciler
    reconciler_enabled: bool = Field(True, alias='RECONCILER_ENABLED')
    reconciler_interval_seconds: int = Field(30, alias='RECONCILER_INTERVAL_SECONDS')
    reconciler_batch_size: int = Field(50, alias='RECONCILER_BATCH_SIZE')
    reconciler_max_concurrency: int = Field(10, alias='RECONCILER_MAX_CONCURRENCY')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')

    def callback_url(self, fallback_base: str = '') -> str:
        base = (self.public_base_url or fallback_base).strip().rstrip('/')
        if not base:
            raise RuntimeError('PUBLIC_BASE_URL is required to build provider callback URLs')
        return f'{base}/api/generate/callback'

    def payment_callback_url(self, fallback_base: str = '') -> str:
        base = (self.public_base_url or fallback_base).strip().rstrip('/')
        if not base:
            raise RuntimeError('PUBLIC_BASE_URL is required to build payment callback URLs')
        return f'{base}/api/payment/zarinpal/verify'


@lru_cache

def get_settings() -> Settings:
    return Settings()
