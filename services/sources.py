"""Normalize citation entries returned by the knowledge-base webhook.

The webhook has shipped two shapes over time. Both are mapped onto the
canonical SourceItem here so nothing downstream branches on field presence:

    canonical   {"source", "chunk"?, "score"?, "text"?}
    legacy      {"title", "url"?, "snippet"?}
    bare        "Some document name"

Legacy mapping: title -> source (url -> source when there is no title),
snippet -> text. Entries that end up without a source are dropped.
"""

from __future__ import annotations

import logging
from typing import Any

from models.schemas import SourceItem

logger = logging.getLogger(__name__)

# canonical field -> accepted keys, in priority order
FIELD_ALIASES = {
    "source": ("source", "title", "url"),
    "chunk": ("chunk",),
    "score": ("score",),
    "text": ("text", "snippet"),
}


def _first_present(raw: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _coerce_score(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _coerce_chunk(value: Any) -> int | float | str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, str)):
        return value
    return str(value)


def normalize_source(raw: Any) -> SourceItem | None:
    """Map one raw citation to a SourceItem, or None if it has no source."""
    if isinstance(raw, str):
        return SourceItem(source=raw) if raw.strip() else None
    if not isinstance(raw, dict):
        return None

    source = _first_present(raw, FIELD_ALIASES["source"])
    if source is None:
        return None
    text = _first_present(raw, FIELD_ALIASES["text"])
    return SourceItem(
        source=str(source),
        chunk=_coerce_chunk(_first_present(raw, FIELD_ALIASES["chunk"])),
        score=_coerce_score(_first_present(raw, FIELD_ALIASES["score"])),
        text=str(text) if text is not None else None,
    )


def normalize_sources(raw: Any) -> list[SourceItem]:
    """Normalize the ``sources`` field of a webhook response."""
    if not isinstance(raw, list):
        if raw is not None:
            logger.warning("Ignoring non-list sources value of type %s", type(raw).__name__)
        return []
    items = []
    for entry in raw:
        item = normalize_source(entry)
        if item is not None:
            items.append(item)
    return items
