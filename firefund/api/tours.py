"""
Tours API Router
Start, close and validate collection tours (tournées)
"""

import logging
from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from firefund.api.dependencies import get_current_user, require_role, get_receipt_service
from firefund.api.error_handling import NotFoundAPIError, ConflictAPIError, ForbiddenAPIError
from firefund.api.schemas import (
    TourStart, TourComplete, TourResponse, TourCompleteResponse, TransactionResponse
)
from firefund.core.database import get_db_session
from firefund.core.models import (
    ProfileDB, TourDB, TransactionDB, TourStatus, TransactionStatus, PaymentMethod, Role, utcnow
)
from firefund.core.receipts import ReceiptService, ReceiptError

router = APIRouter()
logger = logging.getLogger(__name__)

GROUPED_CASH_NAME = "Tour closing - grouped cash"
GROUPED_CASH_NOTES = "Tour closing - total of cash donations"


async def _get_tour(session: AsyncSession, tour_id: str) -> TourDB:
    tour = await session.get(TourDB, tour_id)
    if tour is None:
        raise NotFoundAPIError("Tour", tour_id)
    return tour


@router.post("", response_model=TourResponse, status_code=status.HTTP_201_CREATED)
async def start_tour(
    request: TourStart,
    user: ProfileDB = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session)
):
    """Start a tour; only one may be in progress per profile"""
    result = await session.execute(
        select(TourDB).where(
            TourDB.user_id == user.id,
            TourDB.status == TourStatus.IN_PROGRESS.value
        )
    )
    if result.scalars().first() is not None:
        raise ConflictAPIError("A tour is already in progress")

    tour = TourDB(
        user_id=user.id,
        team_id=user.team_id,
        calendars_initial=request.calendars_initial,
        calendars_remaining=request.calendars_initial,
        notes=request.notes,
        status=TourStatus.IN_PROGRESS.value
    )
    session.add(tour)
    await session.commit()

    logger.info(f"Tour {tour.id} started by {user.id} with {tour.calendars_initial} calendars")
    return TourResponse.model_validate(tour)


@router.get("", response_model=List[TourResponse])
async def list_tours(
    user: ProfileDB = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session)
):
    query = select(TourDB)
    if user.role_enum == Role.VOLUNTEER:
        query = query.where(TourDB.user_id == user.id)
    elif user.role_enum == Role.TEAM_LEAD:
        query = query.where(TourDB.team_id == user.team_id)

    result = await session.execute(query.order_by(TourDB.started_at.desc()))
    return [TourResponse.model_validate(t) for t in result.scalars().all()]


@router.post("/{tour_id}/complete", response_model=TourCompleteResponse)
async def complete_tour(
    tour_id: str,
    request: TourComplete,
    user: ProfileDB = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    """Close a tour: grouped cash, detailed donations and their receipts"""
    tour = await _get_tour(session, tour_id)

    if tour.user_id != user.id and user.role_enum != Role.TREASURER:
        raise ForbiddenAPIError("Only the tour owner can close it")
    if tour.status != TourStatus.IN_PROGRESS.value:
        raise ConflictAPIError(f"Tour is '{tour.status}', not in progress")

    created: List[TransactionDB] = []

    if request.total_cash > 0:
        created.append(TransactionDB(
            user_id=tour.user_id,
            team_id=tour.team_id,
            tournee_id=tour.id,
            amount=request.total_cash,
            calendars_given=request.calendars_sold,
            payment_method=PaymentMethod.CASH.value,
            donator_name=GROUPED_CASH_NAME,
            notes=GROUPED_CASH_NOTES,
            status=TransactionStatus.PENDING.value
        ))

    for donation in request.donations:
        created.append(TransactionDB(
            user_id=tour.user_id,
            team_id=tour.team_id,
            tournee_id=tour.id,
            amount=donation.amount,
            calendars_given=donation.calendars_given,
            payment_method=donation.payment_method.value,
            donator_name=donation.donator_name,
            donator_email=donation.donator_email or None,
            notes=donation.notes,
            status=TransactionStatus.PENDING.value
        ))

    session.add_all(created)

    total_amount = request.total_cash + sum(d.amount for d in request.donations)
    tour.ended_at = utcnow()
    tour.calendars_distributed = request.calendars_sold
    tour.calendars_remaining = max(tour.calendars_initial - request.calendars_sold, 0)
    tour.total_amount = total_amount
    tour.total_transactions = len(created)
    tour.status = TourStatus.PENDING_VALIDATION.value
    if request.notes:
        tour.notes = request.notes

    await session.commit()
    logger.info(f"Tour {tour.id} closed: {total_amount} over {len(created)} transactions")

    receipts = []
    for transaction in created:
        if not transaction.donator_email:
            continue
        try:
            result = await receipt_service.send_receipt(transaction.id)
            receipts.append({
                'transaction_id': transaction.id,
                'donator_email': transaction.donator_email,
                'success': True,
                'receipt_number': result.get('receipt_number'),
            })
        except ReceiptError as e:
            logger.warning(f"Receipt for transaction {transaction.id} failed: {e}")
            receipts.append({
                'transaction_id': transaction.id,
                'donator_email': transaction.donator_email,
                'success': False,
                'error': str(e),
            })

    for transaction in created:
        await session.refresh(transaction)

    return TourCompleteResponse(
        tour=TourResponse.model_validate(tour),
        transactions=[TransactionResponse.model_validate(t) for t in created],
        receipts=receipts,
        summary={
            'total_amount': total_amount,
            'transactions_created': len(created),
            'receipts_sent': sum(1 for r in receipts if r['success']),
            'receipts_failed': sum(1 for r in receipts if not r['success']),
        }
    )


@router.post("/{tour_id}/validate", response_model=TourResponse)
async def validate_tour(
    tour_id: str,
    user: ProfileDB = Depends(require_role(Role.TEAM_LEAD)),
    session: AsyncSession = Depends(get_db_session)
):
    """Team lead: pending_validation -> validated_by_lead. Treasurer: -> completed"""
    tour = await _get_tour(session, tour_id)
    current = TourStatus(tour.status)

    if user.role_enum == Role.TREASURER:
        if current not in (TourStatus.PENDING_VALIDATION, TourStatus.VALIDATED_BY_LEAD):
            raise ConflictAPIError(f"Cannot validate a tour in status '{current.value}'")
        tour.status = TourStatus.COMPLETED.value
    else:
        if user.team_id is None or tour.team_id != user.team_id:
            raise ForbiddenAPIError("Team leads can only validate their own team's tours")
        if current != TourStatus.PENDING_VALIDATION:
            raise ConflictAPIError(f"Cannot validate a tour in status '{current.value}'")
        tour.status = TourStatus.VALIDATED_BY_LEAD.value

    tour.validated_by = user.id
    tour.validated_at = utcnow()
    await session.commit()

    logger.info(f"Tour {tour.id} -> {tour.status} by {user.id}")
    return TourResponse.model_validate(tour)
