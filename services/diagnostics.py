import platform
import re
import subprocess
import sys
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import config
from models.schemas import DiagnosticsInfo, StorageInfo
from services.conversation_store import ConversationStore
from services.settings_provider import SettingsProvider

SENSITIVE_QUERY_KEYS = ("token", "api_key", "apikey", "key", "secret", "password", "auth", "signature")
MASK = "****"

_BEARER_RE = re.compile(r"(Bearer\s+)\S+", re.IGNORECASE)
_QUERY_RE = re.compile(r"([?&](?:token|api[_-]?key|key|secret|signature|auth|password)=)[^&]+", re.IGNORECASE)


def _is_sensitive_key(key: str) -> bool:
    key_lower = key.lower()
    return any(entry in key_lower for entry in SENSITIVE_QUERY_KEYS)


def sanitize_webhook_url(webhook_url: str | None) -> str | None:
    """Mask credentials in a webhook URL before it leaves the machine in a report."""
    if not webhook_url:
        return None
    try:
        parts = urlsplit(webhook_url)
        if not parts.scheme or not parts.hostname:
            raise ValueError("not an absolute URL")
        host = parts.hostname
        if parts.port is not None:
            host = f"{host}:{parts.port}"
        if parts.username or parts.password:
            userinfo = MASK if parts.username else ""
            if parts.password:
                userinfo += f":{MASK}"
            host = f"{userinfo}@{host}"
        query = urlencode(
            [(k, MASK if _is_sensitive_key(k) else v) for k, v in parse_qsl(parts.query, keep_blank_values=True)],
            safe="*",
        )
        return urlunsplit((parts.scheme, host, parts.path, query, parts.fragment))
    except ValueError:
        masked = _BEARER_RE.sub(rf"\1{MASK}", webhook_url)
        return _QUERY_RE.sub(rf"\1{MASK}", masked)


def get_build() -> str:
    try:
        return subprocess.check_output(
            ["git", "rev-parse", "--short", "HEAD"], text=True, stderr=subprocess.DEVNULL
        ).strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


async def get_diagnostics_info(settings: SettingsProvider, conversations: ConversationStore) -> DiagnosticsInfo:
    stats = await conversations.stats()
    return DiagnosticsInfo(
        appName=config.APP_NAME,
        appVersion=config.APP_VERSION,
        build=get_build(),
        platform=sys.platform,
        arch=platform.machine(),
        pythonVersion=platform.python_version(),
        storage=StorageInfo(
            type="files",
            path=str(conversations.directory),
            exists=conversations.directory.is_dir(),
            format="json",
        ),
        conversationsCount=stats["fileCount"],
        conversationsSizeBytes=stats["totalBytes"],
        webhookUrl=sanitize_webhook_url(settings.get_effective().webhookUrl),
    )
