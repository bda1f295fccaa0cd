"""
Quiz Access Data Models

Pydantic models for access decisions and ledger entries.

The document models (UserAccount, PackageRecord, PaymentRecord) describe
the schema of the users, packages and payments collections. The stores
hand those documents around as plain dicts and do not validate them on
read, so a stored value outside an enum (e.g. an unknown access_type)
reaches the guard, which rejects and logs it. QuizCatalogEntry and
CreditLedgerEntry are validated where they are built.
"""

from enum import Enum
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

from pydantic import BaseModel, Field


class AccessType(str, Enum):
    """Entitlement mode governing how quiz/AI access is gated."""

    DURATION = "duration"
    COURSE = "course"
    QUIZ = "quiz"
    DEFAULT = "default"


class UserRole(str, Enum):
    STUDENT = "student"
    ADMIN = "admin"
    MODERATOR = "moderator"


PaymentStatus = Literal["pending", "success", "failed"]

AccessVia = Literal["admin", "free_access", "moderation", "subscription", "course", "credits"]

LedgerSource = Literal["usage", "purchase", "reversal", "grant", "free_access"]


# ==================== DOCUMENT MODELS ====================

class UserAccount(BaseModel):
    """User identity and entitlement state (users collection)"""
    id: str
    username: str
    email: str
    role: UserRole = UserRole.STUDENT
    is_banned: bool = False
    is_deleted: bool = False
    access_type: AccessType = AccessType.DEFAULT
    is_subscribed: bool = False
    quiz_credits: float = Field(default=0, ge=0)
    package_ids: List[str] = Field(default_factory=list)
    payment_ids: List[str] = Field(default_factory=list)
    has_free_access: bool = False
    free_access_count: int = Field(default=0, ge=0)
    courses: List[str] = Field(default_factory=list)


class PackageRecord(BaseModel):
    """Purchasable entitlement template (packages collection)"""
    id: str
    name: str
    price: float
    access: Literal["duration", "course", "quiz"]
    duration: Optional[int] = None  # days, only for access=duration
    courses: List[str] = Field(default_factory=list)


class PaymentRecord(BaseModel):
    """Purchase record (payments collection)"""
    id: str
    user_id: str
    package_id: Optional[str] = None
    reference: Optional[str] = None
    amount: float = 0
    status: PaymentStatus = "pending"
    date: datetime
    ends_at: Optional[datetime] = None
    type: str = "default"
    created_at: Optional[datetime] = None


class QuizCatalogEntry(BaseModel):
    """Quiz as seen by the access gate"""
    id: str
    course_id: str
    credit_hours: Optional[float] = None
    question_ids: List[str] = Field(default_factory=list)


# ==================== LEDGER MODELS ====================

class CreditLedgerEntry(BaseModel):
    """Immutable ledger entry for credit transactions"""
    user_id: str
    action: str  # QUIZ_ACCESS, AI_ACCESS, PAYMENT_CREDIT, CREDIT_REVERSAL, ...
    credits: float
    balance_after: Optional[float] = None
    source: LedgerSource
    request_id: str
    reference: Optional[str] = None
    timestamp: str  # ISO datetime string
    details: Dict[str, Any] = Field(default_factory=dict)


# ==================== RESPONSE MODELS ====================

class AccessDecision(BaseModel):
    """Result of a successful access authorization"""
    allowed: bool = True
    via: AccessVia
    access_type: Optional[AccessType] = None
    credits_debited: float = 0
    remaining_credits: Optional[float] = None
    request_id: str


class QuizCostEstimate(BaseModel):
    """Credit cost of a quiz for a user, without deducting"""
    quiz_id: str
    credit_hours: Optional[float] = None
    required_credits: int
    current_balance: float
    sufficient_credits: bool


class AccessSummary(BaseModel):
    """Current entitlement state for a user"""
    username: str
    access_type: str
    is_subscribed: bool
    quiz_credits: float
    has_free_access: bool
    free_access_count: int
    courses: List[str]
    package_ids: List[str]
    expires_at: Optional[datetime] = None
