"""
Pydantic schemas for API request/response models
"""

from datetime import datetime
from typing import Optional, List, Dict, Any, Literal
from pydantic import BaseModel, Field, field_validator, model_validator

from firefund.core.models import Role, PaymentMethod, TransactionStatus, TourStatus, QRInteractionStatus


EMAIL_REGEX = r'^[^\s@]+@[^\s@]+\.[^\s@]+$'


# ==================== AUTH ====================

class SignupRequest(BaseModel):
    email: str = Field(..., pattern=EMAIL_REGEX, max_length=255)
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = Field(None, max_length=200)

    @field_validator('email', mode='before')
    @classmethod
    def normalize_email(cls, v):
        # before the pattern check
        return v.strip().lower() if isinstance(v, str) else v


class SigninRequest(BaseModel):
    email: str
    password: str

    @field_validator('email', mode='before')
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class ProfileResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    role: Role
    team_id: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SigninResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    profile: ProfileResponse


# ==================== TRANSACTIONS ====================

class TransactionCreate(BaseModel):
    """Insert payload; matches the offline queue item minus local bookkeeping"""
    user_id: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    calendars_given: int = Field(0, ge=0)
    payment_method: PaymentMethod
    team_id: Optional[str] = None
    tournee_id: Optional[str] = None
    donator_name: Optional[str] = Field(None, max_length=200)
    donator_email: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None


class TransactionResponse(BaseModel):
    id: str
    user_id: str
    team_id: Optional[str] = None
    tournee_id: Optional[str] = None
    amount: float
    calendars_given: int
    payment_method: PaymentMethod
    donator_name: Optional[str] = None
    donator_email: Optional[str] = None
    notes: Optional[str] = None
    status: TransactionStatus
    receipt_number: Optional[str] = None
    receipt_status: str
    receipt_pdf_url: Optional[str] = None
    validated_team_at: Optional[datetime] = None
    validated_treasurer_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ==================== TOURS ====================

class TourStart(BaseModel):
    calendars_initial: int = Field(..., ge=0)
    notes: Optional[str] = None


class DetailedDonation(BaseModel):
    """Check or card donation declared when closing a tour"""
    amount: float = Field(..., gt=0)
    calendars_given: int = Field(0, ge=0)
    payment_method: PaymentMethod
    donator_name: Optional[str] = Field(None, max_length=200)
    donator_email: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None

    @field_validator('payment_method')
    @classmethod
    def not_cash(cls, v: PaymentMethod) -> PaymentMethod:
        if v == PaymentMethod.CASH:
            raise ValueError("cash is declared through total_cash")
        return v


class TourComplete(BaseModel):
    total_cash: float = Field(0.0, ge=0)
    calendars_sold: int = Field(..., gt=0)
    donations: List[DetailedDonation] = Field(default_factory=list)
    notes: Optional[str] = None

    @model_validator(mode='after')
    def require_some_money(self):
        if self.total_cash <= 0 and not self.donations:
            raise ValueError("total_cash > 0 or at least one detailed donation is required")
        return self


class TourResponse(BaseModel):
    id: str
    user_id: str
    team_id: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    calendars_initial: int
    calendars_remaining: Optional[int] = None
    calendars_distributed: Optional[int] = None
    total_amount: float
    total_transactions: int
    status: TourStatus
    notes: Optional[str] = None
    validated_by: Optional[str] = None
    validated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TourCompleteResponse(BaseModel):
    tour: TourResponse
    transactions: List[TransactionResponse]
    receipts: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Dict[str, Any] = Field(default_factory=dict)


# ==================== RECEIPTS ====================

class ReceiptSendRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    resend: bool = False
    donator_name: Optional[str] = None
    donator_email: Optional[str] = None
    quality: Literal['draft', 'standard', 'high'] = 'standard'
    send_email: bool = True


# ==================== QR PAYMENTS ====================

class QRInitiateRequest(BaseModel):
    team_id: str = Field(..., min_length=1)
    user_agent: Optional[str] = Field(None, max_length=300)


class QRInitiateResponse(BaseModel):
    interaction_id: str
    payment_link_url: str
    expires_at: datetime
    status: QRInteractionStatus


class QRInteractionResponse(BaseModel):
    interaction_id: str
    team_id: str
    status: QRInteractionStatus
    amount: Optional[float] = None
    calendars_count: Optional[int] = None
    donator_name: Optional[str] = None
    transaction_id: Optional[str] = None
    expires_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CustomerDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class CheckoutSession(BaseModel):
    """The checkout session object carried by a payment event"""
    id: str
    client_reference_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    customer_details: Optional[CustomerDetails] = None
    amount_total: Optional[int] = Field(None, ge=0, description="Minor units (cents)")

    @property
    def interaction_id(self) -> Optional[str]:
        return self.client_reference_id or (self.metadata or {}).get('interaction_id')


class PaymentEventData(BaseModel):
    object: CheckoutSession


class PaymentEvent(BaseModel):
    id: Optional[str] = None
    type: str
    data: PaymentEventData


# ==================== ADMIN ====================

class UserUpdate(BaseModel):
    role: Optional[Role] = None
    team_id: Optional[str] = None
    is_active: Optional[bool] = None
    full_name: Optional[str] = Field(None, max_length=200)
    phone: Optional[str] = Field(None, max_length=30)


class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    chef_id: Optional[str] = None
    calendars_target: int = Field(0, ge=0)
    color: str = Field("#dc2626", max_length=20)
    payment_link_url: Optional[str] = Field(None, max_length=500)


class TeamResponse(BaseModel):
    id: str
    name: str
    chef_id: Optional[str] = None
    calendars_target: int
    color: str
    payment_link_url: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
