"""Async client for the knowledge-base webhook.

ask() never raises for expected conditions. Every outcome is returned as
an Answer or a Failure carrying an ErrorKind:

- invalidUrl         no usable webhook URL, nothing sent
- network            connection-level failure after retries
- timeout            the internal deadline fired first
- canceled           the user cancelled through the pending-request registry
- httpError          401 immediately, other 4xx immediately, 5xx after retries
- malformedResponse  2xx without a usable answer

Retryable transport errors are httpx.NetworkError (connect/read/write/close,
which covers refused connections, DNS failures and unreachable hosts) and
httpx.RemoteProtocolError (server dropped the connection). Timeouts are
never retried.
"""

from __future__ import annotations

import asyncio
import getpass
import logging
import os
import sys
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence

import httpx

import config
from models.schemas import Answer, AskResult, ErrorKind, Failure, Settings, SourceItem
from services.pending_requests import CancelReason, CancelScope, PendingRequestRegistry, RequestAborted
from services.settings_provider import SettingsProvider, is_valid_webhook_url
from services.sources import normalize_sources

logger = logging.getLogger(__name__)

FAILURE_MESSAGES = {
    ErrorKind.INVALID_URL: "Invalid webhook URL. Set a valid address in settings.",
    ErrorKind.NETWORK: "No network connection or the webhook could not be reached.",
    ErrorKind.TIMEOUT: "Timed out waiting for an answer. Try again or raise the limit.",
    ErrorKind.CANCELED: "Request canceled by the user.",
    ErrorKind.HTTP_ERROR: "The server returned an error. Try again later.",
    ErrorKind.MALFORMED_RESPONSE: "No answer from the webhook. Check the configuration.",
}
UNAUTHORIZED_MESSAGE = "Invalid API token. Check the value in the application settings."

RETRYABLE_ERRORS = (httpx.NetworkError, httpx.RemoteProtocolError)

MOCK_ANSWER = Answer(
    text="This is a sample answer from mock mode. You can try out the UI without a webhook.",
    sources=[
        SourceItem(
            source="Company documentation",
            chunk=1,
            score=0.92,
            text="Sample source excerpt for previewing in the UI.",
        ),
        SourceItem(
            source="IT FAQ",
            chunk=2,
            score=0.87,
            text="Short description of a source that can be opened in the browser.",
        ),
    ],
)


def failure(kind: ErrorKind, message: str | None = None, **extra) -> Failure:
    return Failure(errorKind=kind, message=message or FAILURE_MESSAGES[kind], **extra)


def _default_username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


class WebhookClient:
    """Sends questions to the configured webhook with timeout, retry and cancellation."""

    def __init__(
        self,
        settings: SettingsProvider,
        registry: PendingRequestRegistry,
        client: httpx.AsyncClient | None = None,
        timeout: float = config.WEBHOOK_TIMEOUT_MS / 1000,
        retry_delays: Sequence[float] = tuple(ms / 1000 for ms in config.RETRY_DELAYS_MS),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        environ: Mapping[str, str] | None = None,
        os_username: Callable[[], str] = _default_username,
    ):
        self._settings = settings
        self._registry = registry
        self._client = client  # Injected in tests; otherwise one AsyncClient per ask()
        self._timeout = timeout
        self._retry_delays = tuple(retry_delays)
        self._sleep = sleep
        self._environ = environ if environ is not None else os.environ
        self._os_username = os_username

    def mock_mode(self) -> bool:
        if self._environ.get(config.APP_ENV_VAR) == "production":
            return False
        return self._environ.get(config.MOCK_MODE_ENV) == "true"

    def build_payload(self, question: str, conversation_id: str, settings: Settings, device_id: str) -> dict:
        return {
            "message": question,
            "conversation_id": conversation_id,
            "user": {
                "username": settings.username or self._os_username(),
                "device_id": device_id,
            },
            "client": {
                "app_version": config.APP_VERSION,
                "platform": sys.platform,
            },
        }

    @staticmethod
    def build_headers(settings: Settings) -> dict:
        headers = {"Content-Type": "application/json"}
        if settings.apiToken:
            headers["Authorization"] = f"Bearer {settings.apiToken}"
        return headers

    async def ask(self, question: str, conversation_id: str, request_id: str) -> AskResult:
        # Settings and device id live in a JSON file; keep that I/O off the loop
        settings = await asyncio.to_thread(self._settings.get_effective)
        if not is_valid_webhook_url(settings.webhookUrl):
            return failure(ErrorKind.INVALID_URL)

        if self.mock_mode():
            logger.info("Mock mode active, returning canned answer")
            return MOCK_ANSWER.model_copy(deep=True)

        device_id = await asyncio.to_thread(self._settings.get_or_create_device_id)
        scope = CancelScope()
        self._registry.register(request_id, scope)
        timer = asyncio.get_running_loop().call_later(self._timeout, scope.trip, CancelReason.TIMEOUT)
        started_at = time.monotonic()
        try:
            return await scope.run(self._send_with_retries(question, conversation_id, settings, device_id))
        except RequestAborted as e:
            if e.reason is CancelReason.TIMEOUT:
                return failure(ErrorKind.TIMEOUT)
            return failure(ErrorKind.CANCELED)
        finally:
            timer.cancel()
            self._registry.release(request_id)
            logger.info(
                "Webhook request finished in %d ms (timed out: %s)",
                int((time.monotonic() - started_at) * 1000),
                scope.reason is CancelReason.TIMEOUT,
            )

    async def _send_with_retries(
        self, question: str, conversation_id: str, settings: Settings, device_id: str
    ) -> AskResult:
        payload = self.build_payload(question, conversation_id, settings, device_id)
        headers = self.build_headers(settings)

        if self._client is not None:
            return await self._attempts(self._client, settings.webhookUrl, payload, headers, conversation_id)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._attempts(client, settings.webhookUrl, payload, headers, conversation_id)

    async def _attempts(
        self,
        client: httpx.AsyncClient,
        url: str,
        payload: dict,
        headers: dict,
        conversation_id: str,
    ) -> AskResult:
        max_attempts = len(self._retry_delays) + 1
        for attempt in range(max_attempts):
            logger.info(
                "Sending question to webhook (attempt %d/%d, conversation %s, token set: %s)",
                attempt + 1,
                max_attempts,
                conversation_id,
                "Authorization" in headers,
            )
            is_last = attempt == max_attempts - 1
            try:
                res = await client.post(url, json=payload, headers=headers)
                if res.status_code >= 500 and not is_last:
                    logger.warning("Webhook returned %d, retrying", res.status_code)
                else:
                    return self._classify_response(res)
            except httpx.InvalidURL as e:
                logger.warning("Webhook URL rejected by httpx: %s", e)
                return failure(ErrorKind.INVALID_URL)
            except httpx.TimeoutException:
                return failure(ErrorKind.TIMEOUT)
            except RETRYABLE_ERRORS as e:
                if is_last:
                    logger.warning("Webhook unreachable after %d attempts: %s", max_attempts, e)
                    return failure(ErrorKind.NETWORK)
                logger.warning("Webhook connection failed, retrying: %s", e)
            except httpx.TransportError as e:
                logger.warning("Webhook transport error: %s", e)
                return failure(ErrorKind.NETWORK)
            await self._sleep(self._retry_delays[attempt])
        return failure(ErrorKind.NETWORK)

    @staticmethod
    def _classify_response(res: httpx.Response) -> AskResult:
        if res.status_code == 401:
            return failure(ErrorKind.HTTP_ERROR, UNAUTHORIZED_MESSAGE, httpStatus=401)
        if not res.is_success:
            return failure(ErrorKind.HTTP_ERROR, httpStatus=res.status_code)

        try:
            data = res.json()
        except ValueError:
            return failure(ErrorKind.MALFORMED_RESPONSE)
        if not isinstance(data, dict):
            return failure(ErrorKind.MALFORMED_RESPONSE)

        sources = normalize_sources(data.get("sources"))
        answer = data.get("answer")
        error = data.get("error")
        if error or not isinstance(answer, str) or not answer.strip():
            message = error if isinstance(error, str) and error else None
            return failure(ErrorKind.MALFORMED_RESPONSE, message, sources=sources)
        return Answer(text=answer, sources=sources)
