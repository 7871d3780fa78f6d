"""File-backed conversation persistence.

One JSON file per conversation under ``<data_dir>/conversations``. Deleted
conversations move to ``conversations/.trash`` and are purged once older
than the retention period. The recency index lives in the key-value store.

Reads fail soft (a missing or corrupt file reads as an empty conversation).
Writes propagate OSError so the caller can tell the user the save failed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from config import CONVERSATION_INDEX_LIMIT
from models.schemas import ConversationMeta, Message
from services.kv_store import JsonStore

logger = logging.getLogger(__name__)

UNTITLED = "New conversation"
TITLE_WORDS = 8
PREVIEW_CHARS = 120
TRASH_DIR_NAME = ".trash"

_messages_adapter = TypeAdapter(list[Message])


class InvalidConversationIdError(ValueError):
    pass


def derive_title(messages: list[Message]) -> str:
    """First 8 words of the first user message, or a placeholder."""
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return UNTITLED
    words = first_user.content.strip().split()
    return " ".join(words[:TITLE_WORDS]) or UNTITLED


def derive_preview(messages: list[Message]) -> str | None:
    if not messages:
        return None
    text = " ".join(messages[-1].content.split())
    return text[:PREVIEW_CHARS] or None


def format_conversation_txt(conversation_id: str, messages: list[Message]) -> str:
    """Plain-text transcript used for exports."""
    lines = [f"Conversation ID: {conversation_id}", ""]
    for message in messages:
        try:
            created = datetime.fromisoformat(message.createdAt.replace("Z", "+00:00"))
            if created.tzinfo is not None:
                created = created.astimezone(timezone.utc)
            stamp = created.strftime("%Y-%m-%d %H:%M:%S")
        except ValueError:
            stamp = message.createdAt
        role = "USER" if message.role == "user" else "ASSISTANT"
        lines.append(f"[{stamp}] {role}: {message.content}")

        if message.role == "assistant" and message.sources:
            for source in message.sources:
                meta = []
                if source.chunk is not None:
                    meta.append(f"chunk: {source.chunk}")
                if source.score is not None:
                    meta.append(f"score: {source.score}")
                meta_part = f" ({', '.join(meta)})" if meta else ""
                text_part = f": {source.text}" if source.text else ""
                lines.append(f"  - {source.source}{meta_part}{text_part}")
    return "\n".join(lines)


class ConversationStore:
    def __init__(self, data_dir: Path, kv: JsonStore, index_limit: int = CONVERSATION_INDEX_LIMIT):
        self.directory = Path(data_dir) / "conversations"
        self.trash_directory = self.directory / TRASH_DIR_NAME
        self._kv = kv
        self._index_limit = index_limit

    def _path(self, conversation_id: str) -> Path:
        return self.directory / f"{_safe_id(conversation_id)}.json"

    def _trash_path(self, conversation_id: str) -> Path:
        return self.trash_directory / f"{_safe_id(conversation_id)}.json"

    # ---- Conversation bodies ----

    async def exists(self, conversation_id: str) -> bool:
        return await asyncio.to_thread(self._path(conversation_id).is_file)

    async def read(self, conversation_id: str) -> list[Message]:
        return await asyncio.to_thread(self._read_sync, conversation_id)

    def _read_sync(self, conversation_id: str) -> list[Message]:
        path = self._path(conversation_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read conversation %s: %s", conversation_id, e)
            return []
        try:
            return _messages_adapter.validate_json(raw)
        except ValidationError as e:
            logger.warning("Conversation %s is corrupt, treating as empty: %s", conversation_id, e)
            return []

    async def write(self, conversation_id: str, messages: list[Message]) -> None:
        await asyncio.to_thread(self._write_sync, conversation_id, messages)

    def _write_sync(self, conversation_id: str, messages: list[Message]) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(conversation_id)
        body = json.dumps([m.model_dump(exclude_none=True) for m in messages], indent=2, ensure_ascii=False)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(body, encoding="utf-8")
        os.replace(tmp_path, path)

    async def soft_delete(self, conversation_id: str) -> bool:
        return await asyncio.to_thread(self._soft_delete_sync, conversation_id)

    def _soft_delete_sync(self, conversation_id: str) -> bool:
        source = self._path(conversation_id)
        if not source.is_file():
            return False
        self.trash_directory.mkdir(parents=True, exist_ok=True)
        target = self._trash_path(conversation_id)
        os.replace(source, target)
        # mtime marks the deletion time for trash expiry
        os.utime(target)
        logger.info("Moved conversation %s to trash", conversation_id)
        return True

    async def restore(self, conversation_id: str) -> bool:
        return await asyncio.to_thread(self._restore_sync, conversation_id)

    def _restore_sync(self, conversation_id: str) -> bool:
        source = self._trash_path(conversation_id)
        if not source.is_file():
            return False
        self.directory.mkdir(parents=True, exist_ok=True)
        os.replace(source, self._path(conversation_id))
        logger.info("Restored conversation %s from trash", conversation_id)
        return True

    async def hard_delete(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._hard_delete_sync, conversation_id)

    def _hard_delete_sync(self, conversation_id: str) -> None:
        for path in (self._path(conversation_id), self._trash_path(conversation_id)):
            path.unlink(missing_ok=True)

    async def cleanup_expired_trash(self, retention_seconds: float) -> list[str]:
        """Hard-delete trashed conversations older than ``retention_seconds``."""
        return await asyncio.to_thread(self._cleanup_expired_trash_sync, retention_seconds)

    def _cleanup_expired_trash_sync(self, retention_seconds: float) -> list[str]:
        if not self.trash_directory.is_dir():
            return []
        cutoff = time.time() - retention_seconds
        removed = []
        for path in self.trash_directory.glob("*.json"):
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink(missing_ok=True)
                    removed.append(path.stem)
            except OSError as e:
                logger.warning("Could not purge %s from trash: %s", path.name, e)
        if removed:
            logger.info("Purged %d expired conversation(s) from trash: %s", len(removed), ", ".join(removed))
        return removed

    async def stats(self) -> dict:
        return await asyncio.to_thread(self._stats_sync)

    def _stats_sync(self) -> dict:
        try:
            files = [p for p in self.directory.iterdir() if p.is_file() and p.suffix == ".json"]
            total = sum(p.stat().st_size for p in files)
        except OSError:
            return {"fileCount": 0, "totalBytes": 0}
        return {"fileCount": len(files), "totalBytes": total}

    # ---- Recency index ----

    def list_index(self) -> list[ConversationMeta]:
        items = []
        for raw in self._kv.get("conversationsIndex") or []:
            try:
                items.append(ConversationMeta.model_validate(raw))
            except ValidationError:
                logger.warning("Dropping malformed index entry: %r", raw)
        return items

    def upsert_index(self, meta: ConversationMeta, cap: int | None = None) -> list[ConversationMeta]:
        limit = cap if cap is not None else self._index_limit
        rest = [item for item in self.list_index() if item.id != meta.id]
        items = sorted([meta, *rest], key=lambda item: item.updatedAt, reverse=True)[:limit]
        self._kv.set("conversationsIndex", [item.model_dump(exclude_none=True) for item in items])
        return items

    def remove_from_index(self, conversation_id: str) -> None:
        items = [item for item in self.list_index() if item.id != conversation_id]
        self._kv.set("conversationsIndex", [item.model_dump(exclude_none=True) for item in items])

    # ---- Last opened conversation ----

    def get_last_conversation_id(self) -> str:
        return self._kv.get("lastConversationId") or ""

    def set_last_conversation_id(self, conversation_id: str) -> None:
        self._kv.set("lastConversationId", conversation_id)


def _safe_id(conversation_id: str) -> str:
    """Reject ids that would escape the conversations directory."""
    if not conversation_id or conversation_id in (".", "..") or any(c in conversation_id for c in "/\\\0"):
        raise InvalidConversationIdError(f"Invalid conversation id: {conversation_id!r}")
    return conversation_id
