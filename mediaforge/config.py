from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', populate_by_name=True)

    # Database
    database_url: str = Field(..., alias='DATABASE_URL')
    database_echo: bool = Field(False, alias='DATABASE_ECHO')
    database_pool_size: int = Field(5, alias='DATABASE_POOL_SIZE')

    # Providers
    wavespeed_api_key: str = Field('', alias='WAVESPEED_API_KEY')
    wavespeed_base_url: str = Field('https://api.wavespeed.ai/api/v3', alias='WAVESPEED_BASE_URL')
    kie_api_key: str = Field('', alias='KIE_API_KEY')
    kie_base_url: str = Field('https://api.kie.ai/api/v1', alias='KIE_BASE_URL')
    kie_callback_url: str = Field('', alias='KIE_CALLBACK_URL')
    provider_timeout_seconds: float = Field(60.0, alias='PROVIDER_TIMEOUT_SECONDS')

    # Submission
    submit_max_attempts: int = Field(2, alias='SUBMIT_MAX_ATTEMPTS')
    submit_retry_delay_seconds: float = Field(2.0, alias='SUBMIT_RETRY_DELAY_SECONDS')

    # Polling
    poll_max_attempts: int = Field(60, alias='POLL_MAX_ATTEMPTS')
    poll_interval_seconds: float = Field(5.0, alias='POLL_INTERVAL_SECONDS')
    sweep_interval_seconds: int = Field(30, alias='SWEEP_INTERVAL_SECONDS')
    sweep_batch_size: int = Field(200, alias='SWEEP_BATCH_SIZE')
    global_max_poll_concurrency: int = Field(10, alias='GLOBAL_MAX_POLL_CONCURRENCY')
    processing_timeout_seconds: int = Field(3600, alias='PROCESSING_TIMEOUT_SECONDS')
    pending_stale_seconds: int = Field(600, alias='PENDING_STALE_SECONDS')
    clear_queue_completed_window_seconds: int = Field(300, alias='CLEAR_QUEUE_COMPLETED_WINDOW_SECONDS')

    # Archival
    media_storage_path: str = Field('./media', alias='MEDIA_STORAGE_PATH')
    media_public_prefix: str = Field('/media', alias='MEDIA_PUBLIC_PREFIX')
    archive_image_timeout_seconds: float = Field(30.0, alias='ARCHIVE_IMAGE_TIMEOUT_SECONDS')
    archive_video_timeout_seconds: float = Field(60.0, alias='ARCHIVE_VIDEO_TIMEOUT_SECONDS')
    archive_image_quality: int = Field(85, alias='ARCHIVE_IMAGE_QUALITY')

    # Billing
    signup_bonus_credits: int = Field(10, alias='SIGNUP_BONUS_CREDITS')
    free_plan_name: str = Field('Free', alias='FREE_PLAN_NAME')

    # Internal API
    api_enabled: bool = Field(True, alias='API_ENABLED')
    api_host: str = Field('127.0.0.1', alias='API_HOST')
    api_port: int = Field(9020, alias='API_PORT')
    api_tokens: str = Field('', alias='API_TOKENS')
    api_sweep_enabled: bool = Field(False, alias='API_SWEEP_ENABLED')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')
    log_format: str = Field('json', alias='LOG_FORMAT')

    def api_token_list(self) -> List[str]:
        if not self.api_tokens:
            return []
        return [x.strip() for x in self.api_tokens.split(',') if x.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
