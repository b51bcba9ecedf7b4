"""
QR Payments API Router
Donors scan a team QR code and pay online; the payment provider's
webhook turns the paid interaction into a card transaction
"""

import logging
import secrets
import time
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

import httpx
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from firefund.api.dependencies import get_current_user, get_config
from firefund.api.error_handling import (
    NotFoundAPIError, ConflictAPIError, ForbiddenAPIError, ValidationAPIError
)
from firefund.api.schemas import (
    QRInitiateRequest, QRInitiateResponse, QRInteractionResponse, CheckoutSession
)
from firefund.core.database import get_db_session
from firefund.core.models import (
    ProfileDB, TeamDB, TransactionDB, QRInteractionDB, QRInteractionStatus,
    PaymentMethod, TransactionStatus, Role, utcnow
)

router = APIRouter()
logger = logging.getLogger(__name__)

ANONYMOUS_DONOR = "Donateur anonyme"


def generate_interaction_id(team_id: str) -> str:
    """qr_<team prefix>_<unix seconds>_<random hex>"""
    return f"qr_{team_id.replace('-', '')[:8]}_{int(time.time())}_{secrets.token_hex(4)}"


def client_ip(request: Request) -> Optional[str]:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer"""
    forwarded = request.headers.get('x-forwarded-for')
    if forwarded:
        return forwarded.split(',')[0].strip()
    if request.headers.get('x-real-ip'):
        return request.headers['x-real-ip']
    return request.client.host if request.client else None


def payment_link_for(team: TeamDB, interaction_id: str, config: Dict[str, Any]) -> str:
    base = team.payment_link_url or config.get('qr', {}).get('default_payment_link_url')
    if not base:
        raise ConflictAPIError(f"Team '{team.name}' has no payment link configured")
    # the provider copies client_reference_id onto the checkout session
    return str(httpx.URL(base).copy_merge_params({'client_reference_id': interaction_id}))


async def _get_interaction(session: AsyncSession, interaction_id: str) -> QRInteractionDB:
    result = await session.execute(
        select(QRInteractionDB).where(QRInteractionDB.interaction_id == interaction_id)
    )
    interaction = result.scalar_one_or_none()
    if interaction is None:
        raise NotFoundAPIError("QR interaction", interaction_id)
    return interaction


@router.post("/initiate", response_model=QRInitiateResponse, status_code=status.HTTP_201_CREATED)
async def initiate_interaction(
    body: QRInitiateRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session)
):
    """Open a pending interaction for a scanned team QR code; donors are not signed in"""
    team = await session.get(TeamDB, body.team_id)
    if team is None:
        raise NotFoundAPIError("Team", body.team_id)
    if not team.chef_id:
        raise ConflictAPIError(f"Team '{team.name}' has no team lead to credit online donations")

    config = get_config()
    interaction_id = generate_interaction_id(team.id)
    payment_link_url = payment_link_for(team, interaction_id, config)
    ttl_minutes = config.get('qr', {}).get('interaction_ttl_minutes', 30)

    interaction = QRInteractionDB(
        interaction_id=interaction_id,
        team_id=team.id,
        status=QRInteractionStatus.PENDING.value,
        user_agent=body.user_agent or request.headers.get('user-agent'),
        ip_address=client_ip(request),
        expires_at=utcnow() + timedelta(minutes=ttl_minutes)
    )
    session.add(interaction)
    await session.commit()

    logger.info(f"QR interaction {interaction_id} opened for team {team.id}")
    return QRInitiateResponse(
        interaction_id=interaction_id,
        payment_link_url=payment_link_url,
        expires_at=interaction.expires_at,
        status=QRInteractionStatus.PENDING
    )


@router.get("/{interaction_id}", response_model=QRInteractionResponse)
async def get_interaction(
    interaction_id: str,
    user: ProfileDB = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session)
):
    """Polled by the volunteer's device while the donor pays"""
    interaction = await _get_interaction(session, interaction_id)

    if user.role_enum != Role.TREASURER and interaction.team_id != user.team_id:
        raise ForbiddenAPIError("QR interactions are visible to their own team only")

    if interaction.status == QRInteractionStatus.PENDING.value and interaction.expires_at < utcnow():
        interaction.status = QRInteractionStatus.EXPIRED.value
        await session.commit()
        logger.info(f"QR interaction {interaction_id} expired unpaid")

    return QRInteractionResponse.model_validate(interaction)


async def complete_interaction(
    session: AsyncSession,
    checkout: CheckoutSession,
    config: Dict[str, Any]
) -> Tuple[QRInteractionDB, TransactionDB, bool]:
    """Record the card donation of a paid checkout.

    Returns the interaction, its transaction and whether the transaction
    was created now. A second event for the same interaction returns the
    existing transaction.
    """
    if not checkout.interaction_id:
        raise ValidationAPIError("Checkout session carries no interaction id")

    interaction = await _get_interaction(session, checkout.interaction_id)
    if interaction.status == QRInteractionStatus.COMPLETED.value:
        logger.info(f"QR interaction {interaction.interaction_id} already completed")
        return interaction, await session.get(TransactionDB, interaction.transaction_id), False

    if interaction.status == QRInteractionStatus.EXPIRED.value:
        logger.warning(f"Payment received for expired QR interaction {interaction.interaction_id}")

    team = await session.get(TeamDB, interaction.team_id)
    if team is None or not team.chef_id:
        raise ConflictAPIError(f"No team lead to credit for QR interaction {interaction.interaction_id}")

    qr_config = config.get('qr', {})
    if checkout.amount_total:
        amount = checkout.amount_total / 100
    else:
        amount = float(qr_config.get('default_amount', 10.0))
    calendars = int(qr_config.get('calendars_per_donation', 1))

    customer = checkout.customer_details
    donator_name = (customer.name if customer else None) or ANONYMOUS_DONOR
    donator_email = (customer.email if customer else None) or None

    transaction = TransactionDB(
        user_id=team.chef_id,
        team_id=team.id,
        amount=amount,
        calendars_given=calendars,
        payment_method=PaymentMethod.CARD.value,
        donator_name=donator_name,
        donator_email=donator_email,
        notes=f"QR payment {interaction.interaction_id}",
        status=TransactionStatus.PENDING.value
    )
    session.add(transaction)
    await session.flush()

    interaction.status = QRInteractionStatus.COMPLETED.value
    interaction.amount = amount
    interaction.calendars_count = calendars
    interaction.donator_name = donator_name
    interaction.donator_email = donator_email
    interaction.payment_session_id = checkout.id
    interaction.transaction_id = transaction.id
    interaction.completed_at = utcnow()
    await session.commit()

    logger.info(
        f"QR interaction {interaction.interaction_id} paid: {amount} for team {team.id}, "
        f"transaction {transaction.id}"
    )
    return interaction, transaction, True


async def expire_interaction(session: AsyncSession, checkout: CheckoutSession) -> bool:
    """Mark a pending interaction expired; anything else is left alone"""
    if not checkout.interaction_id:
        logger.info(f"Expired checkout {checkout.id} carries no interaction id")
        return False

    result = await session.execute(
        select(QRInteractionDB).where(
            QRInteractionDB.interaction_id == checkout.interaction_id,
            QRInteractionDB.status == QRInteractionStatus.PENDING.value
        )
    )
    interaction = result.scalar_one_or_none()
    if interaction is None:
        return False

    interaction.status = QRInteractionStatus.EXPIRED.value
    await session.commit()
    logger.info(f"QR interaction {interaction.interaction_id} expired")
    return True
