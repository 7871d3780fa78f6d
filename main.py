import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import APP_NAME, HOST, LOG_LEVEL, PORT
from routers.assistant import router as assistant_router
from services.assistant_service import build_service
from services.conversation_store import InvalidConversationIdError
from services.diagnostics import get_build

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests install their own service before startup
    if getattr(app.state, "assistant", None) is None:
        app.state.assistant = build_service()
    service = app.state.assistant
    service.settings.get_or_create_device_id()
    await service.cleanup_expired_trash()
    logger.info("Company assistant ready")
    yield


app = FastAPI(
    title="Company Assistant",
    description="Local service behind the company knowledge-base chat client",
    lifespan=lifespan,
)

# The desktop shell loads from file:// or the dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(assistant_router)


@app.exception_handler(InvalidConversationIdError)
async def invalid_conversation_id(request: Request, exc: InvalidConversationIdError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
async def health():
    return {"status": "ok", "service": APP_NAME, "commit": get_build()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=HOST, port=PORT, reload=True)
