from __future__ import annotations

from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, StrictBool

from shared.models_db import (
    DiscountType,
    Gender,
    Priority,
    QuotationStatusType,
    SpecificationMode,
)

# Request models are deliberately permissive: required-field and range checks
# that carry business messages are made by the services and raised as
# quotation_engine.errors.ValidationError.


class ContactPerson(BaseModel):
    name: Optional[str] = None
    gender: Gender = Gender.MALE


class SpecificationEntry(BaseModel):
    name: str
    specification: str = ""


class SpecificationCategory(BaseModel):
    category: str
    items: List[SpecificationEntry] = Field(default_factory=list)


# RFQ models
class RFQItemInput(BaseModel):
    karoseri: Optional[str] = None
    chassis: Optional[str] = None
    drawingSpecification: Optional[str] = None
    specifications: List[SpecificationCategory] = Field(default_factory=list)
    price: Optional[float] = None
    priceNet: Optional[float] = None
    notes: Optional[str] = None


class RFQItemUpdate(BaseModel):
    karoseri: Optional[str] = None
    chassis: Optional[str] = None
    drawingSpecification: Optional[str] = None
    specifications: Optional[List[SpecificationCategory]] = None
    price: Optional[float] = None
    priceNet: Optional[float] = None
    notes: Optional[str] = None


class CreateRFQ(BaseModel):
    approverId: Optional[str] = None
    quotationCreatorId: Optional[str] = None
    customerName: Optional[str] = None
    contactPerson: Optional[ContactPerson] = None
    description: str = ""
    confidenceRate: Optional[float] = None
    deliveryLocation: Optional[str] = None
    competitor: Optional[str] = None
    canMake: Optional[StrictBool] = None
    projectOngoing: Optional[StrictBool] = None
    priority: Priority = Priority.MEDIUM
    expectedDeliveryDate: Optional[date] = None
    budget: Optional[float] = None
    currency: str = "IDR"
    items: List[RFQItemInput] = Field(default_factory=list)


class RFQDecision(BaseModel):
    notes: Optional[str] = None


# Quotation models
class OfferItemInput(BaseModel):
    karoseri: str
    chassis: str
    drawingSpecification: Optional[str] = None
    specificationMode: SpecificationMode = SpecificationMode.SIMPLE
    specifications: List[Any] = Field(default_factory=list)
    price: float = Field(..., ge=0)
    discountType: DiscountType = DiscountType.PERCENTAGE
    discountValue: float = Field(0, ge=0)
    netto: float = Field(..., ge=0)
    excludePPN: bool = False
    quantity: int = Field(1, ge=1)
    notes: Optional[str] = None


class OfferItemUpdate(BaseModel):
    karoseri: Optional[str] = None
    chassis: Optional[str] = None
    drawingSpecification: Optional[str] = None
    specificationMode: Optional[SpecificationMode] = None
    specifications: Optional[List[Any]] = None
    price: Optional[float] = Field(None, ge=0)
    discountType: Optional[DiscountType] = None
    discountValue: Optional[float] = Field(None, ge=0)
    netto: Optional[float] = Field(None, ge=0)
    excludePPN: Optional[bool] = None
    quantity: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None


class OfferInput(BaseModel):
    notes: Optional[str] = None
    notesImages: List[str] = Field(default_factory=list)
    excludePPN: bool = False
    offerItems: List[OfferItemInput] = Field(default_factory=list)


class OfferUpdate(BaseModel):
    notes: Optional[str] = None
    notesImages: Optional[List[str]] = None
    excludePPN: Optional[bool] = None
    offerItems: Optional[List[OfferItemInput]] = None


class QuotationHeaderInput(BaseModel):
    requesterId: Optional[str] = None
    approverId: Optional[str] = None
    creatorId: Optional[str] = None
    marketingName: Optional[str] = None
    customerName: str
    contactPerson: ContactPerson


class CreateQuotation(BaseModel):
    header: QuotationHeaderInput
    offer: OfferInput


class HeaderUpdate(BaseModel):
    customerName: Optional[str] = None
    contactPerson: Optional[ContactPerson] = None


class QuotationHeaderOverrides(BaseModel):
    """Caller-supplied header fields for an RFQ conversion.

    Actor ids are accepted for compatibility but always replaced by the RFQ's
    own requester/approver/creator chain.
    """
    customerName: Optional[str] = None
    contactPerson: Optional[ContactPerson] = None
    requesterId: Optional[str] = None
    approverId: Optional[str] = None
    creatorId: Optional[str] = None


class OfferOverrides(BaseModel):
    notes: Optional[str] = None
    notesImages: List[str] = Field(default_factory=list)
    excludePPN: bool = False


class ConvertRFQ(BaseModel):
    header: QuotationHeaderOverrides = Field(default_factory=QuotationHeaderOverrides)
    offer: OfferOverrides = Field(default_factory=OfferOverrides)


class QuotationStatusUpdate(BaseModel):
    type: QuotationStatusType
    reason: Optional[str] = None
    selectedOfferId: Optional[int] = None
    selectedOfferItemIds: List[int] = Field(default_factory=list)


class ProgressEntry(BaseModel):
    text: str = ""


class QuotationListFilters(BaseModel):
    customer: Optional[str] = None # case-insensitive substring
    marketing: Optional[str] = None # case-insensitive substring
    statusType: Optional[QuotationStatusType] = None
    createdFrom: Optional[datetime] = None
    createdTo: Optional[datetime] = None
    requesterId: Optional[str] = None
    approverId: Optional[str] = None
    creatorId: Optional[str] = None


# Read models
class PlatformUser(BaseModel):
    id: Optional[str] = None
    fullName: Optional[str] = None
    email: Optional[str] = None


class FollowUpStatus(BaseModel):
    status: str # good | warning | danger
    color: str # green | yellow | red
    label: str
    daysSinceFollowUp: Optional[int] = None


class CleanupResult(BaseModel):
    deletedCount: int = 0
    keptCount: int = 0
    warning: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int
