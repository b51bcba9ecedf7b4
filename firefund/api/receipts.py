"""
Receipts API Router
Receipt requests, delivery health and the idempotency cache
"""

import logging
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query, Request

from firefund.api.dependencies import get_current_user, require_role, get_receipt_service
from firefund.api.error_handling import (
    NotFoundAPIError, ValidationAPIError, ExternalServiceAPIError
)
from firefund.api.schemas import ReceiptSendRequest
from firefund.api.standard_schemas import APIErrorDetail
from firefund.core.models import ProfileDB, Role
from firefund.core.receipts import (
    ReceiptService, TransactionNotFoundError, InvalidDonorEmailError, ReceiptDeliveryError
)

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/send", response_model=Dict[str, Any])
async def send_receipt(
    request: ReceiptSendRequest,
    http_request: Request,
    user: ProfileDB = Depends(get_current_user),
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    """Generate and send the receipt of a donation"""
    try:
        return await receipt_service.send_receipt(
            request.transaction_id,
            resend=request.resend,
            donator_name=request.donator_name,
            donator_email=request.donator_email,
            quality=request.quality,
            send_email=request.send_email,
            user_agent=http_request.headers.get('user-agent')
        )
    except TransactionNotFoundError as e:
        raise NotFoundAPIError("Transaction", e.transaction_id)
    except InvalidDonorEmailError as e:
        raise ValidationAPIError(
            str(e), [APIErrorDetail(field="donator_email", message="A valid donor email is required")]
        )
    except ReceiptDeliveryError as e:
        raise ExternalServiceAPIError(
            f"Receipt delivery failed: {e}",
            details=[APIErrorDetail(field="receipt_number", message=str(e.result.get('receipt_number')))]
        )


@router.get("/health", response_model=Dict[str, Any])
async def receipts_health(
    user: ProfileDB = Depends(get_current_user),
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    return await receipt_service.health()


@router.delete("/cache", response_model=Dict[str, Any])
async def clear_receipt_cache(
    force: Optional[bool] = Query(False),
    user: ProfileDB = Depends(require_role(Role.TREASURER)),
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    return receipt_service.clear_cache(force=bool(force))
