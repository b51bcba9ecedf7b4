"""
Webhooks API Router
Callbacks posted back by the n8n receipt workflow and payment events
from the online payment provider
"""

import json
import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from firefund.api import qr
from firefund.api.dependencies import get_receipt_service, get_config
from firefund.api.error_handling import ValidationAPIError, UnauthorizedAPIError
from firefund.api.schemas import PaymentEvent
from firefund.api.standard_schemas import ErrorCode
from firefund.core.database import get_db_session
from firefund.core.receipts import ReceiptService, ReceiptError, CallbackValidationError
from firefund.integrations.n8n_adapter import SIGNATURE_HEADER, TIMESTAMP_HEADER

router = APIRouter()
logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
CHECKOUT_EXPIRED = "checkout.session.expired"


@router.post("/n8n-callback", response_model=Dict[str, Any])
async def n8n_callback(
    request: Request,
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    """Apply a receipt workflow result"""
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationAPIError("Callback body must be JSON")

    if not isinstance(data, dict):
        raise ValidationAPIError("Callback body must be a JSON object")

    if not receipt_service.n8n_adapter.verify_callback_signature(
        data,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER)
    ):
        logger.warning(f"Rejected n8n callback for workflow {data.get('workflow_id')}: bad signature")
        raise UnauthorizedAPIError("Invalid callback signature", error_code=ErrorCode.INVALID_SIGNATURE)

    try:
        return await receipt_service.process_workflow_callback(data)
    except CallbackValidationError as e:
        raise ValidationAPIError(str(e))


@router.post("/payment", response_model=Dict[str, Any])
async def payment_event(
    event: PaymentEvent,
    session: AsyncSession = Depends(get_db_session),
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    """Checkout events for QR interactions; other event types are acknowledged and ignored"""
    checkout = event.data.object

    if event.type == CHECKOUT_EXPIRED:
        expired = await qr.expire_interaction(session, checkout)
        return {'received': True, 'expired': expired}

    if event.type != CHECKOUT_COMPLETED:
        logger.info(f"Ignoring payment event {event.id} of type {event.type}")
        return {'received': True}

    interaction, transaction, created = await qr.complete_interaction(session, checkout, get_config())

    receipt = None
    if created and transaction.donator_email:
        try:
            result = await receipt_service.send_receipt(transaction.id)
            receipt = {'success': True, 'receipt_number': result.get('receipt_number')}
        except ReceiptError as e:
            logger.warning(f"Receipt for QR transaction {transaction.id} failed: {e}")
            receipt = {'success': False, 'error': str(e)}

    return {
        'received': True,
        'interaction_id': interaction.interaction_id,
        'transaction_id': transaction.id,
        'duplicate': not created,
        'receipt': receipt,
    }
