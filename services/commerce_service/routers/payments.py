"""Payment provider callbacks."""

from fastapi import APIRouter, Depends, Request
from libs.common.config import get_settings
from libs.common.logging import get_logger
from libs.common.rate_limit import payment_limit
from libs.db.session import get_async_db
from pydantic import ValidationError as PydanticValidationError
from services.commerce_service.errors import AuthError, ValidationError
from services.commerce_service.schemas import (
    PaymentCallbackPayload,
    PaymentCallbackResponse,
)
from services.commerce_service.services.payments import (
    handle_provider_callback,
    verify_signature,
)
from services.commerce_service.services.read_cache import ReadCache, get_read_cache
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

router = APIRouter(tags=["store"])

SIGNATURE_HEADER = "X-ClickPesa-Signature"


@router.post("/webhooks/payments", response_model=PaymentCallbackResponse)
@payment_limit
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
    cache: ReadCache = Depends(get_read_cache),
):
    """Receive payment outcomes from the provider.

    The body is verified against its HMAC signature before it is parsed.
    Duplicate deliveries are safe.
    """
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_signature(body, signature, get_settings().PAYMENT_WEBHOOK_SECRET):
        logger.warning("Rejected payment callback with bad signature")
        raise AuthError("Invalid signature")

    try:
        payload = PaymentCallbackPayload.model_validate_json(body)
    except PydanticValidationError:
        raise ValidationError("Invalid JSON payload")

    return await handle_provider_callback(db, cache, payload)
