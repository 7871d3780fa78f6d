import os
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, ""))
    except ValueError:
        return default


def _app_version() -> str:
    try:
        return version("company-assistant")
    except PackageNotFoundError:
        return "0.0.0"


APP_NAME = "company-assistant"
APP_VERSION = os.getenv("APP_VERSION") or _app_version()
DATA_DIR = Path(os.getenv("COMPANY_ASSISTANT_DATA_DIR", str(Path.home() / ".company-assistant")))
WEBHOOK_TIMEOUT_MS = _int_env("N8N_WEBHOOK_TIMEOUT_MS", 120000)
RETRY_DELAYS_MS = (500, 1500)
CONVERSATION_INDEX_LIMIT = 10
TRASH_RETENTION_DAYS = _int_env("COMPANY_ASSISTANT_TRASH_RETENTION_DAYS", 30)
HOST = os.getenv("HOST", "127.0.0.1")
PORT = _int_env("PORT", 8765)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Read at call time by the settings provider and webhook client, never cached
WEBHOOK_OVERRIDE_ENV = "COMPANY_ASSISTANT_WEBHOOK_URL"
SETTINGS_LOCKED_ENV = "SETTINGS_LOCKED"
MOCK_MODE_ENV = "USE_MOCK"
# Mock mode is ignored when APP_ENV=production
APP_ENV_VAR = "APP_ENV"
