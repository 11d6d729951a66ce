"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    app_name: str = "Tender Sniper"
    debug: bool = False

    # PostgreSQL: asyncpg connection string, or sqlite+aiosqlite:// for local runs
    database_url: str = ""

    # BOAMP (OpenDataSoft explore API)
    boamp_search_url: str = (
        "https://boamp-datadila.opendatasoft.com/api/explore/v2.1/catalog/datasets/boamp/records"
    )
    boamp_html_url: str = (
        "https://boamp-datadila.opendatasoft.com/api/explore/v2.1/catalog/datasets/boamp-html/records"
    )
    boamp_page_size: int = 100
    boamp_max_pages: int = 10
    boamp_timeout_seconds: float = 30.0
    boamp_keyword_prefilter: bool = False

    # PISTE OAuth (optional upstream gateway credentials)
    piste_token_url: str = "https://sandbox-oauth.piste.gouv.fr/api/oauth/token"
    piste_client_id: str = ""
    piste_client_secret: str = ""
    piste_scope: str = "tncp.apidecp"

    # Anthropic
    anthropic_api_key: str = ""
    screening_model: str = "claude-sonnet-4-5-20250929"
    classification_model: str = "claude-haiku-4-5-20251001"
    ai_timeout_seconds: float = 45.0
    ai_max_tokens: int = 1500
    ai_demo_mode: bool = False

    # Matching
    partial_keyword_match: bool = True

    # Batch orchestration
    sourcing_lookback_hours: int = 48
    screening_batch_size: int = 10
    sourcing_interval_minutes: int = 15
    scheduler_enabled: bool = True
    cron_secret: str = ""

    # Links in outgoing messages
    public_base_url: str = "http://localhost:8000"

    # Email (SendGrid)
    sendgrid_api_key: str = ""
    alert_email_from: str = "alerts@tendersniper.fr"
    admin_email: str = ""

    # Admin chat alerts (Telegram)
    telegram_bot_token: str = ""
    telegram_admin_chat_id: str = ""

    # DCE capture
    dce_storage_dir: str = "data/dce"
    dce_public_prefix: str = "/dce"
    dce_upload_concurrency: int = 4
    dce_download_timeout_seconds: float = 60.0
    dce_max_archive_mb: int = 200

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
