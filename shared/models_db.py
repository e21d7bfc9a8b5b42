from sqlmodel import Field, SQLModel, JSON, Column
from sqlalchemy import Enum as SQLAlchemyEnum, UniqueConstraint
from datetime import datetime, date, timezone
from typing import List, Optional, Any
from enum import Enum
# Validation happens at the application layer (quotation_engine.models and the
# services) before anything reaches these tables.

# DO NOT import from quotation_engine here to avoid circular dependencies.


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DocumentType(str, Enum):
    RFQ = "RFQ"
    QUOTATION = "QUO"

class RFQStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    QUOTATION_CREATED = "quotation_created"

class ApprovalDecision(str, Enum):
    BID = "bid"
    NO_BID = "no_bid"

class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"

class QuotationStatusType(str, Enum):
    OPEN = "open"
    WIN = "win"
    LOSS = "loss"
    CLOSE = "close"

class DiscountType(str, Enum):
    FLAT = "flat"
    PERCENTAGE = "percentage"

class SpecificationMode(str, Enum):
    SIMPLE = "simple" # list of strings
    COMPLEX = "complex" # list of {label, value} objects


# Base for RFQ, defining the business fields
class RFQBase(SQLModel):
    requester_id: str = Field(index=True)
    approver_id: str = Field(index=True)
    quotation_creator_id: str = Field(index=True)

    customer_name: str = Field(index=True)
    contact_person_name: str
    contact_person_gender: Gender
    description: str = ""
    confidence_rate: int
    delivery_location: str
    competitor: str
    can_make: bool
    project_ongoing: bool
    priority: Priority = Field(default=Priority.MEDIUM)
    expected_delivery_date: Optional[date] = None
    budget: Optional[float] = None
    currency: str = "IDR"

# RFQ table model
class RFQTable(RFQBase, table=True):
    __tablename__ = "rfq"
    id: Optional[int] = Field(default=None, primary_key=True)
    rfq_number: str = Field(index=True, unique=True)

    status: RFQStatus = Field(
        default=RFQStatus.PENDING,
        sa_column=Column(SQLAlchemyEnum(RFQStatus, name="rfqstatus"), nullable=False, index=True)
    )
    approval_decision: Optional[ApprovalDecision] = None
    approval_notes: Optional[str] = None

    submitted_at: datetime = Field(default_factory=utcnow, nullable=False)
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    quotation_created_at: Optional[datetime] = None
    quotation_id: Optional[int] = Field(default=None, foreign_key="quotation_header.id", index=True)

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_column_kwargs={"onupdate": utcnow})

    @property
    def is_approved(self) -> bool:
        # Legacy single-approver flag, always derived from status.
        return self.status == RFQStatus.APPROVED


class RFQItemTable(SQLModel, table=True):
    __tablename__ = "rfq_item"
    id: Optional[int] = Field(default=None, primary_key=True)
    rfq_id: int = Field(foreign_key="rfq.id", index=True, ondelete="CASCADE")
    item_number: int = Field(ge=1)

    karoseri: str
    chassis: str
    drawing_specification_id: Optional[str] = None
    # [{"category": str, "items": [{"name": str, "specification": str}]}]
    specifications: List[Any] = Field(default_factory=list, sa_column=Column(JSON))

    price: float
    price_net: float
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_column_kwargs={"onupdate": utcnow})


class QuotationHeaderTable(SQLModel, table=True):
    __tablename__ = "quotation_header"
    id: Optional[int] = Field(default=None, primary_key=True)
    quotation_number: str = Field(index=True, unique=True)

    requester_id: str = Field(index=True)
    approver_id: str = Field(index=True)
    creator_id: str = Field(index=True)
    marketing_name: str # display snapshot, not a live reference

    customer_name: str = Field(index=True)
    contact_person_name: str
    contact_person_gender: Gender

    status_type: QuotationStatusType = Field(default=QuotationStatusType.OPEN, index=True)
    status_reason: Optional[str] = None
    selected_offer_id: Optional[int] = None
    selected_offer_item_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    last_follow_up_date: Optional[datetime] = None
    progress: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow, nullable=False, index=True)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_column_kwargs={"onupdate": utcnow})


class QuotationOfferTable(SQLModel, table=True):
    __tablename__ = "quotation_offer"
    __table_args__ = (
        UniqueConstraint("quotation_header_id", "offer_number_in_quotation", "revision", name="uq_offer_slot_revision"),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    quotation_header_id: int = Field(foreign_key="quotation_header.id", index=True, ondelete="CASCADE")
    offer_number: str = Field(index=True, unique=True)
    offer_number_in_quotation: int = Field(ge=1)

    revision: int = Field(default=0, ge=0)
    # Back-reference to the preceding revision; never cascades.
    parent_offer_id: Optional[int] = Field(default=None, foreign_key="quotation_offer.id", index=True, ondelete="SET NULL")

    # Cached totals, recomputed from offer_item rows on every items change
    total_price: float = 0
    total_netto: float = 0
    total_discount: float = 0
    total_items_count: int = 0
    accepted_items_count: int = 0
    is_fully_accepted: bool = False
    is_partially_accepted: bool = False

    exclude_ppn: bool = False
    notes: Optional[str] = None
    notes_images: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_column_kwargs={"onupdate": utcnow})

    @property
    def acceptance_status(self) -> str:
        if self.is_fully_accepted:
            return "fully_accepted"
        if self.is_partially_accepted:
            return "partially_accepted"
        return "not_accepted"


class OfferItemTable(SQLModel, table=True):
    __tablename__ = "offer_item"
    id: Optional[int] = Field(default=None, primary_key=True)
    quotation_offer_id: int = Field(foreign_key="quotation_offer.id", index=True, ondelete="CASCADE")
    item_number: int = Field(ge=1)

    karoseri: str
    chassis: str
    drawing_specification_id: Optional[str] = None
    specification_mode: SpecificationMode = Field(default=SpecificationMode.SIMPLE)
    specifications: List[Any] = Field(default_factory=list, sa_column=Column(JSON))

    price: float
    discount_type: DiscountType = Field(default=DiscountType.PERCENTAGE)
    discount_value: float = 0
    netto: float # computed by the caller, stored as given
    exclude_ppn: bool = False

    is_accepted: bool = Field(default=False, index=True)
    accepted_at: Optional[datetime] = None
    accepted_by: Optional[str] = None

    quantity: int = Field(default=1, ge=1)
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, nullable=False, sa_column_kwargs={"onupdate": utcnow})
