"""Effective settings: persisted values with environment-locked overrides.

Nothing is cached. Every read resolves ``(persisted, environment)`` afresh
through resolve_effective_settings, so a changed environment is picked up
on the next call and tests can pass their own environment mapping.
"""

import logging
import os
import uuid
from collections.abc import Callable, Mapping
from urllib.parse import urlparse

import httpx

from config import SETTINGS_LOCKED_ENV, WEBHOOK_OVERRIDE_ENV
from models.schemas import Settings, SettingsState
from services.kv_store import JsonStore

logger = logging.getLogger(__name__)


class InvalidWebhookUrlError(ValueError):
    pass


class SettingsLockedError(PermissionError):
    pass


def is_valid_webhook_url(value: str | None) -> bool:
    """True for absolute http:// or https:// URLs with a host httpx can send to."""
    if not value or any(ch.isspace() for ch in value):
        return False
    try:
        parsed = urlparse(value)
        # .port raises ValueError for a malformed port
        parsed.port
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    try:
        # Bad IDNA labels raise here (InvalidURL, or IDNAError from .host)
        httpx.URL(value).host
    except (httpx.InvalidURL, ValueError):
        return False
    return True


def webhook_override(environ: Mapping[str, str]) -> str:
    return environ.get(WEBHOOK_OVERRIDE_ENV, "")


def resolve_effective_settings(persisted: Settings, environ: Mapping[str, str]) -> Settings:
    override = webhook_override(environ)
    if override:
        return persisted.model_copy(update={"webhookUrl": override})
    return persisted


class SettingsProvider:
    def __init__(
        self,
        store: JsonStore,
        environ: Mapping[str, str] | None = None,
        new_id: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self._store = store
        self._environ = environ if environ is not None else os.environ
        self._new_id = new_id

    def get(self) -> Settings:
        raw = self._store.get("settings") or {}
        try:
            return Settings.model_validate(raw)
        except ValueError as e:
            logger.warning("Stored settings are invalid, falling back to defaults: %s", e)
            return Settings()

    def get_effective(self) -> Settings:
        return resolve_effective_settings(self.get(), self._environ)

    def is_locked(self) -> bool:
        return self._environ.get(SETTINGS_LOCKED_ENV) == "true"

    def is_webhook_locked(self) -> bool:
        return bool(webhook_override(self._environ))

    def state(self) -> SettingsState:
        return SettingsState(
            settings=self.get_effective(),
            locked=self.is_locked(),
            webhookLocked=self.is_webhook_locked(),
        )

    def save(self, settings: Settings) -> Settings:
        """Persist ``settings`` and return the resulting effective settings.

        Raises:
            SettingsLockedError: settings are locked by the environment.
            InvalidWebhookUrlError: a non-empty webhookUrl is not an http(s) URL.
        """
        if self.is_locked():
            raise SettingsLockedError("Settings are locked by the administrator")

        if self.is_webhook_locked():
            # The environment owns the URL; keep whatever was persisted before
            settings = settings.model_copy(update={"webhookUrl": self.get().webhookUrl})
        elif settings.webhookUrl and not is_valid_webhook_url(settings.webhookUrl):
            raise InvalidWebhookUrlError("Webhook URL must start with http:// or https://")

        self._store.set("settings", settings.model_dump())
        logger.info("Settings saved (token set: %s)", bool(settings.apiToken))
        return self.get_effective()

    def get_or_create_device_id(self) -> str:
        existing = self._store.get("deviceId")
        if existing:
            return existing
        device_id = self._new_id()
        self._store.set("deviceId", device_id)
        logger.info("Generated new device id")
        return device_id
