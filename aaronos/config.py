"""
Runtime configuration.

Everything is read from environment variables (optionally loaded from a .env
file) once at startup into a Settings instance that is passed explicitly to the
services that need it.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    environment: str = "development"
    log_level: str = "INFO"

    # Supabase
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    # Text generation
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    generation_timeout_seconds: float = 120.0

    # Job execution
    max_concurrent_jobs: int = 5
    job_poll_interval_seconds: float = 2.0
    ebook_output_dir: str = "/tmp/ebooks"
    discovery_timeout_ms: int = 10000
    scan_timeout_ms: int = 15000
    research_search_url: str = "https://html.duckduckgo.com/html/?q={query}"

    # Scheduler / maintenance
    enable_scheduler: bool = False
    scheduler_timezone: str = "UTC"
    database_url: Optional[str] = None
    backup_dir: str = "/tmp/backups"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and .env if present)."""
        load_dotenv()

        supabase_url = os.environ.get("SUPABASE_URL") or os.environ.get("NEXT_PUBLIC_SUPABASE_URL")
        # Service role key has full access; the anon key is the fallback
        supabase_key = (
            os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
            or os.environ.get("SUPABASE_ANON_KEY")
            or os.environ.get("NEXT_PUBLIC_SUPABASE_ANON_KEY")
        )
        gemini_api_key = (
            os.environ.get("GOOGLE_CLOUD_API_KEY")
            or os.environ.get("GEMINI_API_KEY")
            or os.environ.get("GOOGLE_API_KEY")
        )

        settings = cls(
            environment=os.environ.get("ENVIRONMENT", "development"),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            supabase_url=supabase_url,
            supabase_key=supabase_key,
            gemini_api_key=gemini_api_key,
            gemini_model=os.environ.get("GEMINI_MODEL", "gemini-2.0-flash"),
            generation_timeout_seconds=_env_float("GENERATION_TIMEOUT_SECONDS", 120.0),
            max_concurrent_jobs=_env_int("MAX_CONCURRENT_JOBS", 5),
            job_poll_interval_seconds=_env_float("JOB_POLL_INTERVAL_SECONDS", 2.0),
            ebook_output_dir=os.environ.get("EBOOK_OUTPUT_DIR", "/tmp/ebooks"),
            discovery_timeout_ms=_env_int("DISCOVERY_TIMEOUT_MS", 10000),
            scan_timeout_ms=_env_int("SCAN_TIMEOUT_MS", 15000),
            research_search_url=os.environ.get(
                "RESEARCH_SEARCH_URL", "https://html.duckduckgo.com/html/?q={query}"
            ),
            enable_scheduler=_env_bool("ENABLE_SCHEDULER", False),
            scheduler_timezone=os.environ.get("SCHEDULER_TIMEZONE", "UTC"),
            database_url=os.environ.get("DATABASE_URL"),
            backup_dir=os.environ.get("BACKUP_DIR", "/tmp/backups"),
        )

        if settings.max_concurrent_jobs < 1:
            raise ValueError("MAX_CONCURRENT_JOBS must be at least 1")

        return settings

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)
