import os
import tempfile
from dataclasses import dataclass, field
from typing import Tuple

from dotenv import load_dotenv

load_dotenv()


def _split(value: str) -> Tuple[str, ...]:
    return tuple(s.strip() for s in value.split(",") if s.strip())


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    api_key: str = os.getenv("API_KEY", "")
    allowed_hosts: Tuple[str, ...] = field(default_factory=lambda: _split(os.getenv("ALLOWED_HOSTS", "")))
    default_max_wait_ms: int = int(os.getenv("DEFAULT_MAX_WAIT_MS", "45000"))
    max_wait_ms_ceiling: int = int(os.getenv("MAX_WAIT_MS_CEILING", "120000"))
    default_extra_wait_ms: int = int(os.getenv("DEFAULT_EXTRA_WAIT_MS", "1500"))
    jobs_dir: str = os.getenv("JOBS_DIR", os.path.join(tempfile.gettempdir(), "site-clone-jobs"))
    max_concurrent_jobs: int = int(os.getenv("MAX_CONCURRENT_JOBS", "2"))
    browser_single_process: bool = _flag(os.getenv("BROWSER_SINGLE_PROCESS", "false"))
    cors_origins: Tuple[str, ...] = field(
        default_factory=lambda: _split(os.getenv("CORS_ORIGINS", "http://localhost:3000"))
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "3000"))


settings = Settings()
