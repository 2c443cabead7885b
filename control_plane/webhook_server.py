"""
HTTP service: inbound call webhook plus the control API.
Run with `python -m control_plane` or mount `app` in an existing ASGI server.
"""
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from logging_setup import get_logger, Component
from voicenet_agent.errors import Unauthorized

from .control_api import router as control_router
from .runtime import get_webhook_handler, shutdown_runtime
from .webhook_handler import SIGNATURE_HEADER, TIMESTAMP_HEADER, WebhookHandler

logger = get_logger(Component.WEBHOOK_SERVER)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down control plane")
    await shutdown_runtime()


app = FastAPI(title="VoiceNet Control Plane", lifespan=lifespan)
app.include_router(control_router)


@app.post("/webhook")
async def handle_webhook(
    request: Request,
    signature: str = Header(None, alias=SIGNATURE_HEADER),
    timestamp: str = Header(None, alias=TIMESTAMP_HEADER),
    handler: WebhookHandler = Depends(get_webhook_handler),
):
    """
    Incoming-call webhook.
    The raw body is read before parsing; the signature covers its exact bytes.
    """
    body = await request.body()
    logger.debug("Webhook received", body_size=len(body), has_signature=signature is not None)

    try:
        result = await handler.handle_webhook(body, signature, timestamp)
    except Unauthorized as e:
        logger.warning("Webhook rejected", reason=e.message)
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    if "error" in result:
        logger.error("Webhook processing failed", error=result["error"])
        return JSONResponse(status_code=400, content=result)

    if "call" in result:
        logger.info("Inbound call accepted", call_id=result["call"]["callId"])
    return JSONResponse(content=result)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok", "component": "control_plane"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
