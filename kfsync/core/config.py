import logging
import sys
from urllib.parse import quote_plus, urlencode

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ─── App ──────────────────────────────────────
    environment: str = "development"
    api_host: str = "0.0.0.0"
    api_port: int = 3000
    api_log_level: str = "info"

    # ─── KashFlow ─────────────────────────────────
    kashflow_base_url: str = "https://api.kashflow.com/v2"
    kashflow_session_token: str = ""
    kashflow_username: str = ""
    kashflow_password: str = ""
    kashflow_memorable_word: str = ""
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 3

    # ─── Sync tuning ──────────────────────────────
    concurrency: int = 4
    detail_concurrency: int = 8
    upsert_batch_size: int = 250
    max_captured_upserts: int = 2000
    heartbeat_seconds: float = 5.0
    run_log_max_entries: int = 1000

    # ─── MongoDB ──────────────────────────────────
    mongo_uri: str = ""
    mongo_host: str = ""
    mongo_port: int = 27017
    mongo_db_name: str = "kashflow"
    mongo_username: str = ""
    mongo_password: str = ""
    mongo_auth_source: str = ""

    # ─── Redis ────────────────────────────────────
    redis_url: str = "redis://redis:6379/0"
    sync_lock_ttl_seconds: int = 6 * 60 * 60

    # ─── Schedule ─────────────────────────────────
    cron_enabled: bool = False
    cron_schedule: str = "0 * * * *"
    cron_timezone: str = "Europe/London"

    # Look for .env in current dir (Docker) or parent dir (local dev)
    model_config = {"env_file": [".env", "../.env"], "extra": "ignore"}

    def resolved_mongo_uri(self) -> str:
        """MONGO_URI when set, otherwise a URI assembled from the MONGO_HOST parts."""
        if self.mongo_uri:
            return self.mongo_uri
        if not self.mongo_host:
            return ""
        auth = ""
        if self.mongo_username or self.mongo_password:
            auth = f"{quote_plus(self.mongo_username)}:{quote_plus(self.mongo_password)}@"
        query = urlencode({"authSource": self.mongo_auth_source}) if self.mongo_auth_source else ""
        uri = f"mongodb://{auth}{self.mongo_host}:{self.mongo_port}/{quote_plus(self.mongo_db_name)}"
        return f"{uri}?{query}" if query else uri

    @property
    def mongo_enabled(self) -> bool:
        return bool(self.resolved_mongo_uri() and self.mongo_db_name)


def _validate_settings(s: Settings) -> None:
    """Abort startup in production if KashFlow credentials are missing."""
    errors: list[str] = []

    if not s.kashflow_session_token and not (s.kashflow_username and s.kashflow_password):
        errors.append(
            "Neither KASHFLOW_SESSION_TOKEN nor KASHFLOW_USERNAME/KASHFLOW_PASSWORD is set"
        )
    if s.concurrency < 1 or s.detail_concurrency < 1:
        errors.append("CONCURRENCY and DETAIL_CONCURRENCY must be at least 1")

    if errors:
        if s.environment == "production":
            print("FATAL: Invalid configuration:", file=sys.stderr)
            for e in errors:
                print(f"  - {e}", file=sys.stderr)
            sys.exit(1)
        else:
            log = logging.getLogger("kfsync.config")
            for e in errors:
                log.warning("CONFIG VALIDATION WARNING: %s", e)


settings = Settings()
_validate_settings(settings)
