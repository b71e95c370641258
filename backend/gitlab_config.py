# gitlab_config.py — GitLab integration settings
# Read on every call so operators (and tests) can change them without a restart.
import os
import re
from typing import Pattern

DEFAULT_AUTO_LINK_PATTERN = r"PB-(\d+)"


def auto_link_pattern() -> Pattern:
    return re.compile(os.getenv("GITLAB_AUTO_LINK_PATTERN", DEFAULT_AUTO_LINK_PATTERN), re.IGNORECASE)


def sync_interval_minutes() -> int:
    return int(os.getenv("GITLAB_SYNC_INTERVAL", "15"))


def sync_batch_size() -> int:
    return int(os.getenv("GITLAB_SYNC_BATCH_SIZE", "100"))


def webhook_prefix() -> str:
    return os.getenv("GITLAB_WEBHOOK_PREFIX", "api/webhooks/gitlab").strip("/")


def app_url() -> str:
    return os.getenv("APP_URL", "http://localhost:8000").rstrip("/")


def webhook_url(connection_id: str) -> str:
    """Public URL GitLab should deliver hooks for this connection to"""
    return f"{app_url()}/{webhook_prefix()}/{connection_id}"


def http_timeout() -> float:
    return float(os.getenv("GITLAB_HTTP_TIMEOUT", "30"))


def retry_attempts() -> int:
    return int(os.getenv("GITLAB_RETRY_ATTEMPTS", "3"))


def retry_wait_seconds() -> float:
    return float(os.getenv("GITLAB_RETRY_WAIT", "0.5"))
