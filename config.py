"""Shared configuration for the competitive pricing extractor."""
import json
import os
import sys
from pathlib import Path

# App version
APP_VERSION = "0.4.0"

# Paths
BASE_DIR = Path(__file__).parent

DATA_DIR = Path(os.environ.get("PRICING_DATA_DIR", BASE_DIR / "data"))

# Ensure DATA_DIR exists with restricted permissions (owner-only access)
DATA_DIR.mkdir(parents=True, exist_ok=True)
try:
    os.chmod(DATA_DIR, 0o700)
except OSError:
    pass

LOGS_DIR = DATA_DIR / "logs"
LOG_FILE = LOGS_DIR / "pricing.log"
DB_PATH = DATA_DIR / "pricing.db"
APP_SETTINGS_FILE = DATA_DIR / ".app_settings.json"

# Environment: debug artifacts are only written for staging/local runs
APP_ENV = os.environ.get("APP_ENV", "production").lower()
DEBUG_ARTIFACTS = APP_ENV in ("staging", "local")
DEBUG_DIR = Path(os.environ.get("PRICING_DEBUG_DIR", "/tmp/pricing-debug"))

# Static fetch
HTTP_TIMEOUT = 30  # seconds
MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB
MAX_REDIRECTS = 10
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_WEBSITE = "https://www.usemotion.com/"

# Anything shorter than this is treated as an SPA shell
MIN_STATIC_TEXT_LENGTH = 100

# Browser render
# Set PRICING_BROWSER_RENDER=0 to force paste mode for toggle sites
BROWSER_RENDER_ENABLED = os.environ.get("PRICING_BROWSER_RENDER", "1") == "1"
BROWSER_DEADLINE = 90  # seconds for the whole browser sub-pipeline
BROWSER_NAV_TIMEOUT_MS = 30_000
MAX_BROWSER_CONTEXTS = int(os.environ.get("PRICING_MAX_BROWSER_CONTEXTS", "2"))

# LLM extraction
EXTRACTION_MODEL = os.environ.get("PRICING_EXTRACTION_MODEL", "claude-haiku-4-5-20251001")
MODEL_CHOICES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-5-20250929",
}
LLM_TIMEOUT = 120  # seconds per completion
LLM_MAX_TOKENS = 4000
LLM_TEMPERATURE = 0.1

# Processing
DEFAULT_WORKERS = 4


# --- App Settings (persisted JSON) ---

_DEFAULT_APP_SETTINGS = {
    "anthropic_api_key": "",
    "extraction_model": EXTRACTION_MODEL,
    "browser_render_enabled": BROWSER_RENDER_ENABLED,
}


def load_app_settings():
    """Load app settings from JSON file, merging with defaults."""
    settings = _DEFAULT_APP_SETTINGS.copy()
    try:
        if APP_SETTINGS_FILE.exists():
            saved = json.loads(APP_SETTINGS_FILE.read_text())
            settings.update(saved)
    except (OSError, ValueError) as e:
        print(f"  Warning: ignoring unreadable settings file: {e}", file=sys.stderr)
    return settings


def save_app_settings(settings):
    """Save app settings to JSON file (owner-only perms)."""
    APP_SETTINGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    APP_SETTINGS_FILE.write_text(json.dumps(settings, indent=2))
    try:
        os.chmod(APP_SETTINGS_FILE, 0o600)
    except OSError:
        pass


def get_api_key():
    """Get the Anthropic API key from the environment, falling back to settings."""
    return os.environ.get("ANTHROPIC_API_KEY", "") or load_app_settings().get("anthropic_api_key", "")
