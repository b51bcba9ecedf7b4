"""
Core data models for FireFund - SQLAlchemy persistence
Profiles, teams, tours, donation transactions and delivery logs
"""

from datetime import datetime, timezone
from enum import Enum
import uuid

from sqlalchemy import Column, String, DateTime, Integer, Float, Text, Boolean, JSON, ForeignKey, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the database"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


class Role(str, Enum):
    """Profile roles, lowest privilege first"""
    VOLUNTEER = "volunteer"
    TEAM_LEAD = "team_lead"
    TREASURER = "treasurer"


ROLE_RANK = {
    Role.VOLUNTEER: 0,
    Role.TEAM_LEAD: 1,
    Role.TREASURER: 2,
}


class PaymentMethod(str, Enum):
    """Accepted payment methods"""
    CASH = "cash"
    CHECK = "check"
    CARD = "card"
    TRANSFER = "transfer"


class TransactionStatus(str, Enum):
    """Validation workflow of a donation"""
    PENDING = "pending"
    VALIDATED_TEAM = "validated_team"
    VALIDATED_TREASURER = "validated_treasurer"
    CANCELLED = "cancelled"


class ReceiptStatus(str, Enum):
    """Receipt delivery state of a donation"""
    NONE = "none"
    PENDING = "pending"
    GENERATED = "generated"
    EMAILED = "emailed"
    FAILED = "failed"


class TourStatus(str, Enum):
    """Lifecycle of a collection tour"""
    IN_PROGRESS = "in_progress"
    PENDING_VALIDATION = "pending_validation"
    VALIDATED_BY_LEAD = "validated_by_lead"
    COMPLETED = "completed"


class EmailStatus(str, Enum):
    """Email delivery state"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class QRInteractionStatus(str, Enum):
    """Online payment started from a team QR code"""
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


# SQLAlchemy Models
class TeamDB(Base):
    """Volunteer team"""
    __tablename__ = 'teams'

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False, unique=True)
    chef_id = Column(String(36), nullable=True)
    calendars_target = Column(Integer, nullable=False, default=0)
    color = Column(String(20), nullable=False, default="#dc2626")
    payment_link_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ProfileDB(Base):
    """User profile with role and credentials"""
    __tablename__ = 'profiles'

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default=Role.VOLUNTEER.value)
    team_id = Column(String(36), ForeignKey('teams.id'), nullable=True)
    phone = Column(String(30), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def role_enum(self) -> Role:
        return Role(self.role)


class SessionDB(Base):
    """Bearer session; only the token hash is stored"""
    __tablename__ = 'sessions'

    token_hash = Column(String(64), primary_key=True)
    user_id = Column(String(36), ForeignKey('profiles.id'), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)


class TourDB(Base):
    """Collection tour (tournée) of one volunteer"""
    __tablename__ = 'tournees'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey('profiles.id'), nullable=False, index=True)
    team_id = Column(String(36), ForeignKey('teams.id'), nullable=True)
    started_at = Column(DateTime, default=utcnow)
    ended_at = Column(DateTime, nullable=True)
    calendars_initial = Column(Integer, nullable=False, default=0)
    calendars_remaining = Column(Integer, nullable=True)
    calendars_distributed = Column(Integer, nullable=True)
    total_amount = Column(Float, nullable=False, default=0.0)
    total_transactions = Column(Integer, nullable=False, default=0)
    status = Column(String(30), nullable=False, default=TourStatus.IN_PROGRESS.value, index=True)
    notes = Column(Text, nullable=True)
    validated_by = Column(String(36), nullable=True)
    validated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class TransactionDB(Base):
    """Donation transaction"""
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(36), ForeignKey('profiles.id'), nullable=False, index=True)
    team_id = Column(String(36), ForeignKey('teams.id'), nullable=True, index=True)
    tournee_id = Column(String(36), ForeignKey('tournees.id'), nullable=True)
    amount = Column(Float, nullable=False)
    calendars_given = Column(Integer, nullable=False, default=0)
    payment_method = Column(String(20), nullable=False)
    donator_name = Column(String(200), nullable=True)
    donator_email = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String(30), nullable=False, default=TransactionStatus.PENDING.value, index=True)

    # Receipt tracking
    receipt_number = Column(String(40), nullable=True, unique=True)
    receipt_status = Column(String(20), nullable=False, default=ReceiptStatus.NONE.value)
    receipt_pdf_url = Column(String(500), nullable=True)
    receipt_requested_at = Column(DateTime, nullable=True)
    receipt_generated_at = Column(DateTime, nullable=True)

    validated_team_at = Column(DateTime, nullable=True)
    validated_treasurer_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)


class EmailLogDB(Base):
    """Receipt email delivery log"""
    __tablename__ = 'email_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), ForeignKey('transactions.id'), nullable=False, index=True)
    email_to = Column(String(255), nullable=False)
    subject = Column(String(300), nullable=False)
    status = Column(String(20), nullable=False, default=EmailStatus.PENDING.value)
    receipt_number = Column(String(40), nullable=True)
    error_message = Column(Text, nullable=True)
    user_agent = Column(String(300), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WorkflowLogDB(Base):
    """Outbound workflow request and its callback outcome"""
    __tablename__ = 'workflow_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), nullable=True, index=True)
    workflow_id = Column(String(100), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    request_payload = Column(JSON, nullable=True)
    response_data = Column(JSON, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_workflow_logs_tx_created', 'transaction_id', 'created_at'),
    )


class QRInteractionDB(Base):
    """Donor scan of a team QR code, completed by the payment provider webhook"""
    __tablename__ = 'qr_interactions'

    id = Column(String(36), primary_key=True, default=_new_id)
    interaction_id = Column(String(64), nullable=False, unique=True, index=True)
    team_id = Column(String(36), ForeignKey('teams.id'), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=QRInteractionStatus.PENDING.value, index=True)
    amount = Column(Float, nullable=True)
    calendars_count = Column(Integer, nullable=True)
    donator_name = Column(String(200), nullable=True)
    donator_email = Column(String(255), nullable=True)
    payment_session_id = Column(String(255), nullable=True, unique=True)
    transaction_id = Column(String(36), ForeignKey('transactions.id'), nullable=True)
    user_agent = Column(String(300), nullable=True)
    ip_address = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
