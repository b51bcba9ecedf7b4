"""
API Dependencies for FastAPI Router Modules
Shared dependencies for authentication, roles and services
"""

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, Optional
import logging

from firefund.core.database import get_db_session
from firefund.core.models import ProfileDB, SessionDB, Role, utcnow
from firefund.core.receipts import ReceiptService
from firefund.core.security import security_service
from firefund.api.error_handling import UnauthorizedAPIError, ForbiddenAPIError

# Initialize security scheme
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


# Set during app initialization
_config: Dict[str, Any] = {}
_receipt_service: Optional[ReceiptService] = None


def init_api_dependencies(config: Dict[str, Any], receipt_service: Optional[ReceiptService] = None):
    """Initialize API dependencies with configuration"""
    global _config, _receipt_service
    _config = config
    _receipt_service = receipt_service


def get_config() -> Dict[str, Any]:
    return _config


async def get_receipt_service() -> ReceiptService:
    """FastAPI dependency to get the receipt service"""
    if _receipt_service is None:
        logger.error("Receipt service not initialized - please check init_api_dependencies")
        raise RuntimeError("Receipt service not available")
    return _receipt_service


async def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> str:
    if not credentials or not credentials.credentials:
        raise UnauthorizedAPIError("Missing bearer token")
    return credentials.credentials


async def get_current_user(
    token: str = Depends(get_bearer_token),
    session: AsyncSession = Depends(get_db_session)
) -> ProfileDB:
    """Resolve the bearer token to an active profile"""
    db_session = await session.get(SessionDB, security_service.hash_token(token))
    if db_session is None or db_session.expires_at <= utcnow():
        raise UnauthorizedAPIError("Invalid or expired session")

    profile = await session.get(ProfileDB, db_session.user_id)
    if profile is None or not profile.is_active:
        raise UnauthorizedAPIError("Profile inactive or missing")

    return profile


def require_role(minimum: Role):
    """Dependency factory rejecting profiles below ``minimum``"""

    async def check_role(user: ProfileDB = Depends(get_current_user)) -> ProfileDB:
        if not security_service.has_role(user.role_enum, minimum):
            raise ForbiddenAPIError(f"Role '{minimum.value}' or higher required")
        return user

    return check_role
