from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class SourceItem(BaseModel):
    source: str
    chunk: Optional[Union[int, float, str]] = None
    score: Optional[float] = None
    text: Optional[str] = None


class RetryPayload(BaseModel):
    question: str
    conversationId: str


class Message(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
    createdAt: str
    sources: Optional[list[SourceItem]] = None
    isError: Optional[bool] = None
    retryPayload: Optional[RetryPayload] = None


class Settings(BaseModel):
    webhookUrl: str = ""
    apiToken: str = ""
    username: str = ""
    theme: Literal["dark", "light", "system"] = "dark"


class SettingsState(BaseModel):
    settings: Settings
    locked: bool
    webhookLocked: bool


class ConversationMeta(BaseModel):
    id: str
    title: str
    updatedAt: str
    preview: Optional[str] = None


class ConversationPayload(BaseModel):
    conversationId: str
    messages: list[Message]


class ErrorKind(str, Enum):
    INVALID_URL = "invalidUrl"
    NETWORK = "network"
    TIMEOUT = "timeout"
    CANCELED = "canceled"
    HTTP_ERROR = "httpError"
    MALFORMED_RESPONSE = "malformedResponse"


class Answer(BaseModel):
    kind: Literal["answer"] = "answer"
    text: str
    sources: list[SourceItem] = Field(default_factory=list)


class Failure(BaseModel):
    kind: Literal["failure"] = "failure"
    message: str
    errorKind: ErrorKind
    httpStatus: Optional[int] = None
    sources: list[SourceItem] = Field(default_factory=list)


AskResult = Union[Answer, Failure]


class AskRequest(BaseModel):
    question: str
    conversationId: str
    requestId: str


class AskResponse(BaseModel):
    result: Union[Answer, Failure] = Field(discriminator="kind")
    message: Optional[Message] = None


class OpenExternalRequest(BaseModel):
    url: str


class StorageInfo(BaseModel):
    type: Literal["files", "sqlite", "unknown"] = "files"
    path: str
    exists: bool
    format: Optional[str] = None


class DiagnosticsInfo(BaseModel):
    appName: str
    appVersion: str
    build: str
    platform: str
    arch: str
    pythonVersion: str
    storage: StorageInfo
    conversationsCount: int = 0
    conversationsSizeBytes: int = 0
    webhookUrl: Optional[str] = None
