from fastapi import APIRouter, Request, HTTPException, Depends
from app.core.config import settings
from app.core.exceptions import AuthenticationFailure, WebhookError
from app.db.engine import async_session_factory
from app.services.signature_service import get_signature_header, require_valid_signature
from app.services.webhook_processor import WebhookProcessor
import logging

router = APIRouter(tags=["webhooks"])
logger = logging.getLogger(__name__)


def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor.from_settings(settings, async_session_factory)


def get_webhook_secret() -> str:
    return settings.CREEM_WEBHOOK_SECRET


@router.post("/creem")
async def creem_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    secret: str = Depends(get_webhook_secret),
):
    # Verify against the bytes as received; never against re-serialised JSON.
    payload = await request.body()
    signature = get_signature_header(request.headers)

    try:
        require_valid_signature(payload, signature, secret)
    except AuthenticationFailure as e:
        logger.warning(f"Creem webhook rejected: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message)

    try:
        outcome = await processor.process(payload)
    except WebhookError as e:
        logger.error(f"Creem webhook processing failed: {e.message}")
        raise HTTPException(status_code=e.status_code, detail="Error processing webhook")
    except Exception as e:
        logger.exception(f"Unexpected error processing Creem webhook: {e}")
        raise HTTPException(status_code=500, detail="Error processing webhook")

    return outcome.to_response()
