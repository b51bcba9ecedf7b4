"""
Transactions API Router
The remote store the field client syncs into, plus the validation workflow
"""

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from firefund.api.dependencies import get_current_user, require_role
from firefund.api.error_handling import NotFoundAPIError, ConflictAPIError, ForbiddenAPIError
from firefund.api.schemas import TransactionCreate, TransactionResponse
from firefund.core.database import get_db_session
from firefund.core.models import ProfileDB, TransactionDB, TransactionStatus, Role, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


async def _get_transaction(session: AsyncSession, transaction_id: str) -> TransactionDB:
    transaction = await session.get(TransactionDB, transaction_id)
    if transaction is None:
        raise NotFoundAPIError("Transaction", transaction_id)
    return transaction


@router.post("", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    request: TransactionCreate,
    user: ProfileDB = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session)
):
    """Insert one donation; status always starts as pending"""
    if request.user_id != user.id and user.role_enum != Role.TREASURER:
        raise ForbiddenAPIError("Transactions can only be recorded for your own profile")

    team_id = request.team_id
    if team_id is None and request.user_id == user.id:
        team_id = user.team_id

    transaction = TransactionDB(
        **request.model_dump(exclude={'team_id', 'payment_method'}),
        payment_method=request.payment_method.value,
        team_id=team_id,
        status=TransactionStatus.PENDING.value
    )
    session.add(transaction)
    await session.commit()

    logger.info(
        f"Transaction {transaction.id} recorded: {transaction.amount} "
        f"({transaction.payment_method}, user {transaction.user_id})"
    )
    return TransactionResponse.model_validate(transaction)


@router.get("", response_model=List[TransactionResponse])
async def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: ProfileDB = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session)
):
    """List transactions visible to the current role, newest first"""
    query = select(TransactionDB)

    role = user.role_enum
    if role == Role.VOLUNTEER:
        query = query.where(TransactionDB.user_id == user.id)
    elif role == Role.TEAM_LEAD:
        query = query.where(TransactionDB.team_id == user.team_id)

    if status_filter is not None:
        query = query.where(TransactionDB.status == status_filter.value)

    query = query.order_by(TransactionDB.created_at.desc()).limit(limit).offset(offset)
    result = await session.execute(query)
    return [TransactionResponse.model_validate(t) for t in result.scalars().all()]


@router.post("/{transaction_id}/validate", response_model=TransactionResponse)
async def validate_transaction(
    transaction_id: str,
    user: ProfileDB = Depends(require_role(Role.TEAM_LEAD)),
    session: AsyncSession = Depends(get_db_session)
):
    """Team lead: pending -> validated_team. Treasurer: pending|validated_team -> validated_treasurer"""
    transaction = await _get_transaction(session, transaction_id)
    current = TransactionStatus(transaction.status)

    if user.role_enum == Role.TREASURER:
        if current not in (TransactionStatus.PENDING, TransactionStatus.VALIDATED_TEAM):
            raise ConflictAPIError(f"Cannot validate a transaction in status '{current.value}'")
        transaction.status = TransactionStatus.VALIDATED_TREASURER.value
        transaction.validated_treasurer_at = utcnow()
    else:
        if user.team_id is None or transaction.team_id != user.team_id:
            raise ForbiddenAPIError("Team leads can only validate their own team's transactions")
        if current != TransactionStatus.PENDING:
            raise ConflictAPIError(f"Cannot validate a transaction in status '{current.value}'")
        transaction.status = TransactionStatus.VALIDATED_TEAM.value
        transaction.validated_team_at = utcnow()

    await session.commit()
    logger.info(f"Transaction {transaction.id} -> {transaction.status} by {user.id}")
    return TransactionResponse.model_validate(transaction)


@router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_transaction(
    transaction_id: str,
    user: ProfileDB = Depends(require_role(Role.TREASURER)),
    session: AsyncSession = Depends(get_db_session)
):
    transaction = await _get_transaction(session, transaction_id)

    if transaction.status == TransactionStatus.VALIDATED_TREASURER.value:
        raise ConflictAPIError("A transaction validated by the treasurer cannot be cancelled")
    if transaction.status == TransactionStatus.CANCELLED.value:
        raise ConflictAPIError("Transaction is already cancelled")

    transaction.status = TransactionStatus.CANCELLED.value
    await session.commit()

    logger.info(f"Transaction {transaction.id} cancelled by {user.id}")
    return TransactionResponse.model_validate(transaction)
