import logging
import sys

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse

import config
from models.schemas import (
    AskRequest,
    AskResponse,
    ConversationMeta,
    ConversationPayload,
    DiagnosticsInfo,
    Message,
    OpenExternalRequest,
    Settings,
    SettingsState,
)
from services.assistant_service import AssistantService
from services.conversation_store import format_conversation_txt
from services.diagnostics import get_diagnostics_info
from services.pending_requests import DuplicateRequestError
from services.settings_provider import InvalidWebhookUrlError, SettingsLockedError, is_valid_webhook_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/assistant")


def _service(request: Request) -> AssistantService:
    return request.app.state.assistant


# ---- Settings ----


@router.get("/settings")
async def get_settings(request: Request) -> SettingsState:
    return _service(request).settings.state()


@router.put("/settings")
async def save_settings(request: Request, body: Settings) -> SettingsState:
    provider = _service(request).settings
    try:
        provider.save(body)
    except SettingsLockedError as e:
        raise HTTPException(status_code=403, detail=str(e)) from None
    except InvalidWebhookUrlError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    return provider.state()


@router.get("/device")
async def get_device(request: Request):
    return {"deviceId": _service(request).settings.get_or_create_device_id()}


# ---- Conversations ----


@router.post("/conversations/last")
async def load_last_conversation(request: Request) -> ConversationPayload:
    return await _service(request).load_last()


@router.post("/conversations")
async def new_conversation(request: Request) -> ConversationPayload:
    return await _service(request).new_conversation()


@router.get("/conversations")
async def list_conversations(request: Request) -> list[ConversationMeta]:
    return _service(request).list_conversations()


@router.get("/conversations/{conversation_id}")
async def load_conversation(conversation_id: str, request: Request) -> ConversationPayload:
    return await _service(request).load(conversation_id)


@router.put("/conversations/{conversation_id}")
async def save_conversation(conversation_id: str, request: Request, body: list[Message]):
    try:
        meta = await _service(request).save(conversation_id, body)
    except OSError:
        logger.exception("Saving conversation %s failed", conversation_id)
        raise HTTPException(status_code=500, detail="Failed to save conversation") from None
    return {"saved": True, "meta": meta}


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, request: Request, permanent: bool = False):
    service = _service(request)
    if permanent:
        await service.purge_conversation(conversation_id)
        return {"deleted": True}
    deleted = await service.delete_conversation(conversation_id)
    return {"deleted": deleted}


@router.post("/conversations/{conversation_id}/restore")
async def restore_conversation(conversation_id: str, request: Request):
    restored = await _service(request).restore_conversation(conversation_id)
    if not restored:
        raise HTTPException(status_code=404, detail="Conversation not found in trash")
    return {"restored": True}


@router.get("/conversations/{conversation_id}/export", response_class=PlainTextResponse)
async def export_conversation(conversation_id: str, request: Request):
    payload = await _service(request).load(conversation_id)
    return PlainTextResponse(
        format_conversation_txt(payload.conversationId, payload.messages),
        headers={"Content-Disposition": f'attachment; filename="conversation-{conversation_id}.txt"'},
    )


# ---- Webhook ----


@router.post("/ask")
async def ask(request: Request, body: AskRequest) -> AskResponse:
    question = body.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="Question must not be empty")
    if not body.conversationId:
        raise HTTPException(status_code=400, detail="conversationId is required")
    try:
        result, message = await _service(request).ask(question, body.conversationId, body.requestId)
    except DuplicateRequestError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    return AskResponse(result=result, message=message)


@router.post("/ask/{request_id}/cancel")
async def cancel_ask(request_id: str, request: Request):
    return {"canceled": _service(request).cancel(request_id)}


@router.post("/open-external")
async def open_external(body: OpenExternalRequest):
    """Validate a link before the shell opens it in the system browser."""
    if not is_valid_webhook_url(body.url):
        raise HTTPException(status_code=400, detail="Invalid URL")
    return {"url": body.url}


# ---- Client / diagnostics ----


@router.get("/client")
async def client_info():
    return {"app_version": config.APP_VERSION, "platform": sys.platform}


@router.get("/diagnostics")
async def diagnostics(request: Request) -> DiagnosticsInfo:
    service = _service(request)
    return await get_diagnostics_info(service.settings, service.conversations)
