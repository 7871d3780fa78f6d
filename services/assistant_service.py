"""Conversation and ask workflows behind the desktop shell's API calls.

Owns one instance each of the settings provider, conversation store,
pending-request registry and webhook client. ``build_service`` wires
them for a data directory.
"""

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path

import config
from models.schemas import (
    Answer,
    AskResult,
    ConversationMeta,
    ConversationPayload,
    ErrorKind,
    Message,
    RetryPayload,
)
from services.conversation_store import ConversationStore, derive_preview, derive_title
from services.kv_store import JsonStore
from services.pending_requests import PendingRequestRegistry
from services.settings_provider import SettingsProvider
from services.webhook_client import WebhookClient

logger = logging.getLogger(__name__)

# Failures the user can retry with the same question
RETRYABLE_KINDS = {
    ErrorKind.NETWORK,
    ErrorKind.TIMEOUT,
    ErrorKind.HTTP_ERROR,
    ErrorKind.MALFORMED_RESPONSE,
}


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def new_id() -> str:
    return str(uuid.uuid4())


def build_assistant_message(
    result: AskResult,
    question: str,
    conversation_id: str,
    now: Callable[[], str] = utc_now_iso,
    make_id: Callable[[], str] = new_id,
) -> Message | None:
    """Turn an ask result into the assistant message the shell appends.

    Cancelled requests produce no message.
    """
    if isinstance(result, Answer):
        return Message(
            id=make_id(),
            role="assistant",
            content=result.text,
            createdAt=now(),
            sources=result.sources,
        )
    if result.errorKind is ErrorKind.CANCELED:
        return None

    retry = None
    if result.errorKind in RETRYABLE_KINDS:
        retry = RetryPayload(question=question, conversationId=conversation_id)
    return Message(
        id=make_id(),
        role="assistant",
        content=result.message,
        createdAt=now(),
        sources=result.sources or None,
        isError=True,
        retryPayload=retry,
    )


def replace_failed_message(messages: list[Message], failed_id: str, replacement: Message) -> list[Message]:
    """Swap a failed assistant message for a successful retry, keeping its position.

    Messages are otherwise immutable, so only an ``isError`` assistant
    message is replaced. Unknown ids append the replacement instead.
    """
    updated = list(messages)
    for i, message in enumerate(updated):
        if message.id == failed_id and message.role == "assistant" and message.isError:
            updated[i] = replacement
            return updated
    updated.append(replacement)
    return updated


class AssistantService:
    def __init__(
        self,
        settings: SettingsProvider,
        conversations: ConversationStore,
        registry: PendingRequestRegistry,
        webhook: WebhookClient,
    ):
        self.settings = settings
        self.conversations = conversations
        self.registry = registry
        self.webhook = webhook

    # ---- Conversations ----

    async def _create_conversation(self) -> ConversationPayload:
        conversation_id = new_id()
        self.conversations.set_last_conversation_id(conversation_id)
        messages = await self.conversations.read(conversation_id)
        await self.conversations.write(conversation_id, messages)
        return ConversationPayload(conversationId=conversation_id, messages=messages)

    async def load_last(self) -> ConversationPayload:
        last_id = self.conversations.get_last_conversation_id()
        if last_id and await self.conversations.exists(last_id):
            messages = await self.conversations.read(last_id)
            return ConversationPayload(conversationId=last_id, messages=messages)
        return await self._create_conversation()

    async def new_conversation(self) -> ConversationPayload:
        return await self._create_conversation()

    async def load(self, conversation_id: str) -> ConversationPayload:
        messages = await self.conversations.read(conversation_id)
        return ConversationPayload(conversationId=conversation_id, messages=messages)

    async def save(self, conversation_id: str, messages: list[Message]) -> ConversationMeta:
        """Persist messages and refresh the recency index. OSError propagates."""
        await self.conversations.write(conversation_id, messages)
        self.conversations.set_last_conversation_id(conversation_id)
        meta = ConversationMeta(
            id=conversation_id,
            title=derive_title(messages),
            updatedAt=utc_now_iso(),
            preview=derive_preview(messages),
        )
        self.conversations.upsert_index(meta)
        return meta

    def list_conversations(self) -> list[ConversationMeta]:
        return self.conversations.list_index()

    async def delete_conversation(self, conversation_id: str) -> bool:
        deleted = await self.conversations.soft_delete(conversation_id)
        if deleted:
            self.conversations.remove_from_index(conversation_id)
            if self.conversations.get_last_conversation_id() == conversation_id:
                self.conversations.set_last_conversation_id("")
        return deleted

    async def purge_conversation(self, conversation_id: str) -> None:
        await self.conversations.hard_delete(conversation_id)
        self.conversations.remove_from_index(conversation_id)
        if self.conversations.get_last_conversation_id() == conversation_id:
            self.conversations.set_last_conversation_id("")

    async def restore_conversation(self, conversation_id: str) -> bool:
        restored = await self.conversations.restore(conversation_id)
        if restored:
            messages = await self.conversations.read(conversation_id)
            self.conversations.upsert_index(
                ConversationMeta(
                    id=conversation_id,
                    title=derive_title(messages),
                    updatedAt=utc_now_iso(),
                    preview=derive_preview(messages),
                )
            )
        return restored

    async def cleanup_expired_trash(self, retention_days: int = config.TRASH_RETENTION_DAYS) -> list[str]:
        return await self.conversations.cleanup_expired_trash(retention_days * 86400)

    # ---- Asking ----

    async def ask(self, question: str, conversation_id: str, request_id: str) -> tuple[AskResult, Message | None]:
        result = await self.webhook.ask(question, conversation_id, request_id)
        if isinstance(result, Answer):
            logger.info("Answer received for conversation %s (%d sources)", conversation_id, len(result.sources))
        elif result.errorKind is not ErrorKind.CANCELED:
            logger.warning("Ask failed for conversation %s: %s", conversation_id, result.errorKind.value)
        return result, build_assistant_message(result, question, conversation_id)

    def cancel(self, request_id: str) -> bool:
        return self.registry.cancel(request_id)


def build_service(
    data_dir: Path = config.DATA_DIR,
    environ: Mapping[str, str] | None = None,
    **webhook_kwargs,
) -> AssistantService:
    """Wire an AssistantService for ``data_dir``.

    Extra keyword arguments go to WebhookClient (tests pass a mock transport
    client, a short timeout or a recording sleep).
    """
    kv = JsonStore(Path(data_dir) / "config.json")
    settings = SettingsProvider(kv, environ)
    registry = PendingRequestRegistry()
    return AssistantService(
        settings=settings,
        conversations=ConversationStore(data_dir, kv),
        registry=registry,
        webhook=WebhookClient(settings, registry, environ=environ, **webhook_kwargs),
    )
