"""Automation configuration: constants, timeouts, portal table, env-loaded settings.

Settings.load() reads ~/.autochallenge/shared.env first (common URLs and
secrets), then ~/.autochallenge/worker.env (component-specific overrides).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# --- Browser ---
# Many portals reject narrow viewports, so every session presents a desktop.
VIEWPORT = {'width': 1920, 'height': 1080}

# --- Timeouts ---
SELECTOR_TIMEOUT_MS = 10_000
WAIT_FOR_TIMEOUT_MS = 15_000
NAVIGATION_TIMEOUT_MS = 30_000
MAX_WAIT_STEP_MS = 30_000
TOTAL_EXECUTION_TIMEOUT = 300.0  # seconds, whole recipe run

# --- Retry bounds (issuer adapters) ---
ANTI_BOT_MAX_ATTEMPTS = 3
ANTI_BOT_DELAY = 2.0
ADAPTER_RETRY_DELAY = 3.0

# --- CAPTCHA service ---
CAPTCHA_API_URL = 'https://2captcha.com'
CAPTCHA_POLL_INTERVAL = 5.0
CAPTCHA_TIMEOUT_DEFAULT = 120.0

# --- Storage ---
EVIDENCE_CONTENT_TYPE = 'image/jpeg'
SCREENSHOT_CONTENT_TYPE = 'image/png'
VIDEO_CONTENT_TYPE = 'video/webm'

# Known challenge portals, keyed by normalised authority name. Consulted by
# the learner before any external search.
PORTAL_URLS: dict[str, str] = {
    'lewisham': 'https://pcnevidence.lewisham.gov.uk/pcnonline/index.php',
    'westminster': 'https://pcnpayment.westminster.gov.uk/',
    'camden': 'https://www.camden.gov.uk/parking-fines',
    'islington': 'https://www.islington.gov.uk/parking/parking-fines',
    'hackney': 'https://hackney.gov.uk/pcn-challenge',
}


def normalise_authority(name: str) -> str:
    """'London Borough of Lewisham' -> 'lewisham'. Used as lookup key and id."""
    cleaned = name.strip().lower()
    for prefix in ('london borough of ', 'royal borough of ', 'city of ', 'borough of '):
        if cleaned.startswith(prefix):
            cleaned = cleaned[len(prefix):]
    for suffix in (' city council', ' borough council', ' council'):
        if cleaned.endswith(suffix):
            cleaned = cleaned[: -len(suffix)]
            break
    return '_'.join(cleaned.replace('-', ' ').split())


_WORKER_REQUIRED = ('WORKER_SECRET',)


def _bool(key: str, default: str) -> bool:
    return os.environ.get(key, default).strip().lower() in ('1', 'true', 'yes')


@dataclass(frozen=True)
class Settings:
    """Immutable runtime configuration."""

    # Storage
    db_path: str
    evidence_dir: str
    evidence_base_url: str

    # CAPTCHA service
    captcha_api_key: str
    captcha_timeout_seconds: float

    # Alerting
    alert_webhook_url: str

    # Ticket store API
    api_base_url: str
    api_secret: str

    # Worker server
    worker_host: str
    worker_port: int
    worker_secret: str
    max_concurrent_jobs: int

    # Browser
    headless: bool
    record_video: bool

    # Verifier
    verify_interval_seconds: int

    # Logging
    log_level: str

    @classmethod
    def load(cls, require_worker: bool = False) -> Settings:
        """Load settings from env files and the process environment.

        Raises ValueError listing every missing variable when
        require_worker is set and worker-only variables are absent.
        """
        base_dir = Path.home() / '.autochallenge'
        shared_env = base_dir / 'shared.env'
        component_env = base_dir / 'worker.env'
        if shared_env.exists():
            load_dotenv(shared_env)
        if component_env.exists():
            load_dotenv(component_env, override=True)

        if require_worker:
            missing = [
                name for name in _WORKER_REQUIRED
                if not os.environ.get(name, '').strip()
            ]
            if missing:
                raise ValueError(
                    f"Missing required environment variables: {', '.join(missing)}"
                )

        return cls(
            db_path=os.environ.get('DB_PATH', 'autochallenge.db').strip(),
            evidence_dir=os.environ.get(
                'EVIDENCE_DIR', str(base_dir / 'evidence'),
            ).strip(),
            evidence_base_url=os.environ.get('EVIDENCE_BASE_URL', '').strip(),
            captcha_api_key=os.environ.get('TWO_CAPTCHA_API_KEY', '').strip(),
            captcha_timeout_seconds=float(
                os.environ.get('CAPTCHA_TIMEOUT_SECONDS', str(CAPTCHA_TIMEOUT_DEFAULT))
            ),
            alert_webhook_url=os.environ.get('ALERT_WEBHOOK_URL', '').strip(),
            api_base_url=os.environ.get('API_BASE_URL', '').strip(),
            api_secret=os.environ.get('API_SECRET', '').strip(),
            worker_host=os.environ.get('WORKER_HOST', '0.0.0.0').strip(),
            worker_port=int(os.environ.get('WORKER_PORT', '8431')),
            worker_secret=os.environ.get('WORKER_SECRET', '').strip(),
            max_concurrent_jobs=int(os.environ.get('MAX_CONCURRENT_JOBS', '2')),
            headless=_bool('HEADLESS', 'false'),
            record_video=_bool('RECORD_VIDEO', 'false'),
            verify_interval_seconds=int(os.environ.get('VERIFY_INTERVAL_SECONDS', '86400')),
            log_level=os.environ.get('LOG_LEVEL', 'INFO').strip().upper(),
        )
