"""
Admin API Router
Treasurer dashboard, email statistics, profile and team management
"""

import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, status
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from firefund.api.dependencies import require_role, get_receipt_service
from firefund.api.error_handling import NotFoundAPIError, ConflictAPIError
from firefund.api.schemas import UserUpdate, ProfileResponse, TeamCreate, TeamResponse
from firefund.core.database import get_db_session
from firefund.core.models import (
    ProfileDB, TeamDB, TourDB, TransactionDB, TransactionStatus, TourStatus, Role
)
from firefund.core.receipts import ReceiptService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/dashboard", response_model=Dict[str, Any])
async def get_dashboard(
    user: ProfileDB = Depends(require_role(Role.TREASURER)),
    session: AsyncSession = Depends(get_db_session),
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    """Campaign totals, per-team progress and pending work"""
    active = TransactionDB.status != TransactionStatus.CANCELLED.value

    totals = (await session.execute(
        select(
            func.coalesce(func.sum(TransactionDB.amount), 0.0),
            func.coalesce(func.sum(TransactionDB.calendars_given), 0),
            func.count(TransactionDB.id)
        ).where(active)
    )).one()

    by_status = {s.value: 0 for s in TransactionStatus}
    for tx_status, count in (await session.execute(
        select(TransactionDB.status, func.count(TransactionDB.id)).group_by(TransactionDB.status)
    )).all():
        by_status[tx_status] = count

    by_payment_method = {}
    for method, count, amount in (await session.execute(
        select(TransactionDB.payment_method, func.count(TransactionDB.id), func.sum(TransactionDB.amount))
        .where(active)
        .group_by(TransactionDB.payment_method)
    )).all():
        by_payment_method[method] = {'count': count, 'amount': round(amount or 0.0, 2)}

    team_totals = {
        team_id: (amount or 0.0, calendars or 0)
        for team_id, amount, calendars in (await session.execute(
            select(TransactionDB.team_id, func.sum(TransactionDB.amount), func.sum(TransactionDB.calendars_given))
            .where(active)
            .group_by(TransactionDB.team_id)
        )).all()
    }

    teams = []
    for team in (await session.execute(select(TeamDB).order_by(TeamDB.name))).scalars().all():
        amount, calendars = team_totals.get(team.id, (0.0, 0))
        teams.append({
            'id': team.id,
            'name': team.name,
            'color': team.color,
            'amount': round(amount, 2),
            'calendars': calendars,
            'calendars_target': team.calendars_target,
            'progress_percent': round(calendars / team.calendars_target * 100, 1)
            if team.calendars_target else 0.0,
        })

    tours_pending = (await session.execute(
        select(func.count(TourDB.id)).where(TourDB.status.in_([
            TourStatus.PENDING_VALIDATION.value, TourStatus.VALIDATED_BY_LEAD.value
        ]))
    )).scalar_one()

    return {
        'totals': {
            'amount': round(float(totals[0]), 2),
            'calendars': int(totals[1]),
            'transactions': totals[2],
        },
        'transactions_by_status': by_status,
        'by_payment_method': by_payment_method,
        'teams': teams,
        'tours_awaiting_validation': tours_pending,
        'email_stats_24h': await receipt_service.email_stats(24),
    }


@router.get("/email-stats", response_model=Dict[str, int])
async def get_email_stats(
    user: ProfileDB = Depends(require_role(Role.TREASURER)),
    receipt_service: ReceiptService = Depends(get_receipt_service)
):
    return await receipt_service.email_stats(24)


@router.patch("/users/{user_id}", response_model=ProfileResponse)
async def update_user(
    user_id: str,
    request: UserUpdate,
    user: ProfileDB = Depends(require_role(Role.TREASURER)),
    session: AsyncSession = Depends(get_db_session)
):
    """Change role, team or active flag of a profile"""
    profile = await session.get(ProfileDB, user_id)
    if profile is None:
        raise NotFoundAPIError("Profile", user_id)

    updates = request.model_dump(exclude_unset=True)
    if updates.get('team_id') and await session.get(TeamDB, updates['team_id']) is None:
        raise NotFoundAPIError("Team", updates['team_id'])

    for field, value in updates.items():
        setattr(profile, field, value.value if isinstance(value, Role) else value)

    await session.commit()
    logger.info(f"Profile {profile.id} updated by {user.id}: {sorted(updates)}")
    return ProfileResponse.model_validate(profile)


@router.post("/teams", response_model=TeamResponse, status_code=status.HTTP_201_CREATED)
async def create_team(
    request: TeamCreate,
    user: ProfileDB = Depends(require_role(Role.TREASURER)),
    session: AsyncSession = Depends(get_db_session)
):
    team = TeamDB(**request.model_dump())
    session.add(team)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ConflictAPIError(f"Team '{request.name}' already exists")

    logger.info(f"Team {team.name} created by {user.id}")
    return TeamResponse.model_validate(team)
