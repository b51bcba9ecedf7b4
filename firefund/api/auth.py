"""
Auth API Router
Signup, signin, signout and the current profile
"""

import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from firefund.api.dependencies import get_current_user, get_bearer_token, get_config
from firefund.api.error_handling import ConflictAPIError, UnauthorizedAPIError
from firefund.api.schemas import SignupRequest, SigninRequest, SigninResponse, ProfileResponse
from firefund.api.standard_schemas import APISuccessResponse
from firefund.core.database import get_db_session
from firefund.core.models import ProfileDB, SessionDB, Role
from firefund.core.security import security_service

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/signup", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
async def signup(request: SignupRequest, session: AsyncSession = Depends(get_db_session)):
    """Create a volunteer profile"""
    existing = await session.execute(select(ProfileDB).where(ProfileDB.email == request.email))
    if existing.scalar_one_or_none() is not None:
        raise ConflictAPIError(f"A profile already exists for {request.email}")

    profile = ProfileDB(
        email=request.email,
        full_name=request.full_name,
        role=Role.VOLUNTEER.value,
        password_hash=security_service.hash_password(request.password)
    )
    session.add(profile)
    await session.commit()

    logger.info(f"Profile created: {profile.id}")
    return ProfileResponse.model_validate(profile)


@router.post("/signin", response_model=SigninResponse)
async def signin(request: SigninRequest, session: AsyncSession = Depends(get_db_session)):
    """Exchange credentials for a bearer token"""
    result = await session.execute(select(ProfileDB).where(ProfileDB.email == request.email))
    profile = result.scalar_one_or_none()

    if profile is None or not security_service.verify_password(request.password, profile.password_hash):
        raise UnauthorizedAPIError("Invalid email or password")

    if not profile.is_active:
        raise UnauthorizedAPIError("Profile is inactive")

    token = security_service.generate_session_token()
    ttl_hours = get_config().get('auth', {}).get('session_ttl_hours', 168)
    db_session = SessionDB(
        token_hash=security_service.hash_token(token),
        user_id=profile.id,
        expires_at=security_service.session_expiry(ttl_hours)
    )
    session.add(db_session)
    await session.commit()

    logger.info(f"Profile {profile.id} signed in")
    return SigninResponse(
        access_token=token,
        expires_at=db_session.expires_at,
        profile=ProfileResponse.model_validate(profile)
    )


@router.post("/signout", response_model=APISuccessResponse)
async def signout(
    token: str = Depends(get_bearer_token),
    user: ProfileDB = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session)
):
    db_session = await session.get(SessionDB, security_service.hash_token(token))
    if db_session is not None:
        await session.delete(db_session)
        await session.commit()

    return APISuccessResponse(message="Signed out")


@router.get("/profile", response_model=ProfileResponse)
async def get_profile(user: ProfileDB = Depends(get_current_user)):
    return ProfileResponse.model_validate(user)
