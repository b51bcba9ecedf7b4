"""
FireFund core module
Exports the persistence models and shared services
"""

from .models import (
    Role,
    PaymentMethod,
    TransactionStatus,
    ReceiptStatus,
    TourStatus,
    EmailStatus,
    ProfileDB,
    TeamDB,
    TourDB,
    TransactionDB,
    EmailLogDB,
    WorkflowLogDB,
)
from .database import DatabaseService, db_service
from .security import SecurityService, security_service

__all__ = [
    # Models
    'Role',
    'PaymentMethod',
    'TransactionStatus',
    'ReceiptStatus',
    'TourStatus',
    'EmailStatus',
    'ProfileDB',
    'TeamDB',
    'TourDB',
    'TransactionDB',
    'EmailLogDB',
    'WorkflowLogDB',

    # Services
    'DatabaseService',
    'db_service',
    'SecurityService',
    'security_service',
]
