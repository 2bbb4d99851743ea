from pydantic import BaseModel, Field, field_validator
from typing import Optional, Literal
from datetime import datetime
from decimal import Decimal


SubscriptionKind = Literal["content_access", "messaging_access"]


class PaymentConfirmation(BaseModel):
    """Provider-neutral confirmation built by the provider adapters."""

    provider: str = Field(..., min_length=1, max_length=64)
    providerTransactionId: str = Field(..., min_length=1, max_length=255)
    creatorId: str = Field(..., min_length=1)
    subscriberId: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(..., pattern="^[A-Za-z]{3}$")
    paymentMethod: Optional[str] = Field(default=None, max_length=64)
    startedAt: Optional[datetime] = None
    kind: SubscriptionKind = "content_access"

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @field_validator("provider", "providerTransactionId")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped


class PaymentOutcomeResponse(BaseModel):
    success: bool
    message: str
    subscriptionId: Optional[str] = None
    status: Optional[str] = None
    action: Literal["created", "renewed", "reactivated", "noop"]
    alreadyProcessed: bool
    renewalCount: Optional[int] = None
    previousEndDate: Optional[datetime] = None
    newEndDate: Optional[datetime] = None
    transactionId: Optional[str] = None
    providerTransactionId: str
    provider: str


class TransactionResponse(BaseModel):
    id: str
    subscriptionId: str
    subscriberId: str
    creatorId: str
    amount: Decimal
    currency: str
    status: str
    provider: str
    providerTransactionId: str
    paymentMethod: Optional[str] = None
    createdAt: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    id: str
    creatorId: str
    subscriberId: str
    kind: SubscriptionKind
    startDate: datetime
    endDate: datetime
    amountPaid: Decimal
    currency: str
    renewalCount: int = Field(..., ge=0)
    status: str
    effectiveStatus: str
    daysLeft: int = Field(..., ge=0)
    lastUpdateTime: Optional[datetime] = None


class SubscribeEligibilityResponse(BaseModel):
    canSubscribe: bool
    reason: Optional[
        Literal["self", "not_creator", "already_active", "pending", "still_valid_until_expiry"]
    ] = None
    subscriptionId: Optional[str] = None
    endDate: Optional[datetime] = None


class CancelSubscriptionResponse(BaseModel):
    canceled: bool
    reason: Optional[str] = None
    subscription: SubscriptionResponse


class UserStatsResponse(BaseModel):
    userId: str
    subscribersCount: int = Field(..., ge=0)
    postsCount: int = Field(..., ge=0)
    totalLikes: int = Field(..., ge=0)
    lastUpdated: Optional[datetime] = None


class CreatorApplicationSubmitRequest(BaseModel):
    applicationReason: str = Field(..., min_length=1, max_length=2000)


class CreatorApplicationResponse(BaseModel):
    id: str
    status: Literal["pending", "approved", "rejected"]
    attemptNumber: int
    rejectionCount: int
    submittedAt: datetime
    reviewedAt: Optional[datetime] = None
    reapplicationAllowedAt: Optional[datetime] = None


class ReapplicationEligibilityResponse(BaseModel):
    canReapply: bool
    mustContactSupport: bool
    waitUntil: Optional[datetime] = None
    rejectionCount: int


class ReviewApplicationRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    adminNotes: Optional[str] = Field(default=None, max_length=2000)


class AdminCreatorApplicationResponse(CreatorApplicationResponse):
    userId: str
    username: Optional[str] = None
    accountType: Optional[str] = None
    applicationReason: str
    adminNotes: Optional[str] = None
