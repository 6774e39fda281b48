"""Ottie configuration: paths, provider credentials, shipped registries."""

import json
import os
from pathlib import Path

# User data directory: database, logs and the .env file live here
APP_DIR = Path(os.environ.get("OTTIE_DIR", Path.home() / ".ottie"))

# Core paths
DB_PATH = APP_DIR / "ottie.db"
ENV_PATH = APP_DIR / ".env"
LOG_DIR = APP_DIR / "logs"

# Package-shipped config (site adapter registry, reference config schema)
PACKAGE_DIR = Path(__file__).parent
CONFIG_DIR = PACKAGE_DIR / "config"
SITES_PATH = CONFIG_DIR / "sites.yaml"
SAMPLE_CONFIG_PATH = CONFIG_DIR / "site-config-sample.json"


def ensure_dirs():
    """Create all required directories."""
    for d in [APP_DIR, LOG_DIR]:
        d.mkdir(parents=True, exist_ok=True)


def load_env():
    """Load environment variables from ~/.ottie/.env if it exists."""
    from dotenv import load_dotenv
    if ENV_PATH.exists():
        load_dotenv(ENV_PATH)
    # Also try CWD .env as fallback
    load_dotenv()


def load_sites_config() -> dict:
    """Load sites.yaml (per-site adapters and structured-JSON scrapers)."""
    import yaml
    if not SITES_PATH.exists():
        return {}
    return yaml.safe_load(SITES_PATH.read_text(encoding="utf-8")) or {}


def load_sample_config() -> dict:
    """Load the reference site config whose key order every generated config follows."""
    return json.loads(SAMPLE_CONFIG_PATH.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Default values - referenced across modules instead of magic numbers
# ---------------------------------------------------------------------------

DEFAULTS = {
    "scrape_timeout_ms": 170_000,
    "apify_poll_interval": 5,
    "worker_idle_wait": 5,
    "sweep_interval": 60,
    "stuck_after": 600,
    "poll_interval": 1.0,
    "poll_error_interval": 2.0,
    "poll_max_attempts": 120,
    "call1_temperature": 0.3,
    "call2_temperature": 0.8,
    "max_photos": 20,
    "min_paragraph_chars": 10,
    "min_leaf_chars": 3,
}


# ---------------------------------------------------------------------------
# Scrape providers
# ---------------------------------------------------------------------------

PROVIDERS = ("scraperapi", "firecrawl", "browser")

# provider -> (env var, human name). The browser provider needs no key.
PROVIDER_KEYS: dict[str, tuple[str, str]] = {
    "scraperapi": ("SCRAPERAPI_KEY", "ScraperAPI"),
    "firecrawl": ("FIRECRAWL_API_KEY", "Firecrawl API"),
    "apify": ("APIFY_API_TOKEN", "Apify API"),
}


def get_scraper_provider() -> str:
    """Active generic provider from SCRAPER_PROVIDER (defaults to scraperapi).

    Read at call time so load_env() in the CLI bootstrap is always visible.
    """
    provider = os.environ.get("SCRAPER_PROVIDER", "").strip().lower()
    if provider in PROVIDERS:
        return provider
    return "scraperapi"


def provider_config_error(provider: str) -> str | None:
    """Return the user-facing 'not configured' message for a provider, or None."""
    if provider not in PROVIDER_KEYS:
        return None
    env_var, label = PROVIDER_KEYS[provider]
    if os.environ.get(env_var):
        return None
    return f"{label} is not configured. Please set {env_var} environment variable."


def get_internal_token() -> str:
    """Shared secret expected in the x-internal-token header of the worker trigger."""
    return os.environ.get("INTERNAL_API_TOKEN", "")
