"""Shared fixtures for company-assistant tests."""

import os
import sys

import pytest

# Ensure the project root is on sys.path so `from services.X import Y` works
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from models.schemas import Message, RetryPayload, SourceItem  # noqa: E402
from services.conversation_store import ConversationStore  # noqa: E402
from services.kv_store import JsonStore  # noqa: E402
from services.pending_requests import PendingRequestRegistry  # noqa: E402
from services.settings_provider import SettingsProvider  # noqa: E402


@pytest.fixture()
def environ():
    """A fake process environment; tests mutate it instead of os.environ."""
    return {}


@pytest.fixture()
def kv(tmp_path):
    return JsonStore(tmp_path / "config.json")


@pytest.fixture()
def settings_provider(kv, environ):
    return SettingsProvider(kv, environ)


@pytest.fixture()
def conversation_store(tmp_path, kv):
    return ConversationStore(tmp_path, kv)


@pytest.fixture()
def registry():
    return PendingRequestRegistry()


@pytest.fixture()
def sample_messages():
    """A short exchange including an answered question and a failed retryable one."""
    return [
        Message(
            id="6f1c2f0e-0000-4000-8000-000000000001",
            role="user",
            content="  How do I request   a new laptop from IT support today please?  ",
            createdAt="2026-03-02T09:15:00.000Z",
        ),
        Message(
            id="6f1c2f0e-0000-4000-8000-000000000002",
            role="assistant",
            content="Open a ticket in the IT portal under *Hardware*.",
            createdAt="2026-03-02T09:15:04.000Z",
            sources=[
                SourceItem(source="IT FAQ", chunk=3, score=0.91, text="Hardware requests go through the portal."),
                SourceItem(source="Onboarding guide"),
            ],
        ),
        Message(
            id="6f1c2f0e-0000-4000-8000-000000000003",
            role="user",
            content="And a monitor?",
            createdAt="2026-03-02T09:16:00.000Z",
        ),
        Message(
            id="6f1c2f0e-0000-4000-8000-000000000004",
            role="assistant",
            content="Timed out waiting for an answer. Try again or raise the limit.",
            createdAt="2026-03-02T09:18:00.000Z",
            isError=True,
            retryPayload=RetryPayload(question="And a monitor?", conversationId="conv-1"),
        ),
    ]
