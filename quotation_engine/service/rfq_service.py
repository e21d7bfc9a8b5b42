import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from quotation_engine.errors import InvalidState, NotAuthorized, NotFound, ValidationError
from quotation_engine.models import CreateRFQ, Pagination, RFQItemInput, RFQItemUpdate
from quotation_engine.service.access import AccessFilter, Capability
from quotation_engine.service.formatting import is_blank, normalise_customer_name, normalise_person_name
from quotation_engine.service.line_items import LineItemStore
from quotation_engine.service.notifications import notify_best_effort
from quotation_engine.service.ports import AbstractRepository, Notifier
from quotation_engine.service.sequence import SequenceGenerator
from quotation_engine.service.unit_of_work import UnitOfWork
from shared.models_db import (
    ApprovalDecision, DocumentType, RFQItemTable, RFQStatus, RFQTable, utcnow,
)
from shared.logging import get_logger

logger = get_logger(__name__)


def _missing_price(value) -> bool:
    # 0 counts as missing, as does an absent value
    return not value


def validate_rfq_item(item: RFQItemInput, position: Optional[int] = None) -> None:
    if is_blank(item.karoseri) or is_blank(item.chassis) or _missing_price(item.price) or _missing_price(item.priceNet):
        prefix = f"Item {position}: " if position is not None else ""
        raise ValidationError(f"{prefix}karoseri, chassis, price, and price net are required")


def validate_create_rfq(data: CreateRFQ) -> None:
    """Field checks made before any capability lookup or write."""
    if (
        is_blank(data.approverId)
        or is_blank(data.quotationCreatorId)
        or is_blank(data.customerName)
        or data.contactPerson is None
        or is_blank(data.contactPerson.name)
    ):
        raise ValidationError("Approver, quotation creator, customer name, and contact person name are required")

    rate = data.confidenceRate
    if rate is None or not float(rate).is_integer() or not 0 <= rate <= 100:
        raise ValidationError("Confidence rate must be an integer between 0 and 100")

    if is_blank(data.deliveryLocation):
        raise ValidationError("Delivery location is required")
    if is_blank(data.competitor):
        raise ValidationError("Competitor is required")

    if not isinstance(data.canMake, bool) or not isinstance(data.projectOngoing, bool):
        raise ValidationError("Can make and project ongoing must be true or false")

    if not data.items:
        raise ValidationError("At least one item is required")
    for position, item in enumerate(data.items, start=1):
        validate_rfq_item(item, position)


class RFQService:
    """RFQ Workflow: pending -> approved -> quotation_created, or pending -> rejected.

    Transitions are one-way and guarded by the designated actor; the RFQ row is
    read with a row lock so concurrent decisions serialise on the status check.
    """

    def __init__(
        self,
        repository: AbstractRepository,
        uow: UnitOfWork,
        access: AccessFilter,
        notifier: Optional[Notifier] = None,
        sequence: Optional[SequenceGenerator] = None,
        line_items: Optional[LineItemStore] = None,
    ):
        self.repository = repository
        self.uow = uow
        self.access = access
        self.notifier = notifier
        self.sequence = sequence or SequenceGenerator(repository)
        self.line_items = line_items or LineItemStore(repository)

    async def _rfq(self, rfq_id: int, for_update: bool = False) -> RFQTable:
        rfq = await self.repository.get_rfq(rfq_id, for_update=for_update)
        if not rfq:
            raise NotFound("RFQ not found")
        return rfq

    async def create(self, data: CreateRFQ, actor_id: str, now: Optional[datetime] = None) -> Tuple[RFQTable, List[RFQItemTable]]:
        logger.info(f"RFQService creating RFQ for customer '{data.customerName}' requested by {actor_id}. Items: {len(data.items)}")
        validate_create_rfq(data)

        if not await self.access.has(data.approverId, Capability.APPROVE_RFQ):
            raise ValidationError("Selected approver does not have permission to approve RFQs")
        if not await self.access.has(data.quotationCreatorId, Capability.QUOTATION_CREATE):
            raise ValidationError("Selected quotation creator does not have permission to create quotations")

        now = now or utcnow()
        async with self.uow.begin():
            async def _persist(number: str) -> RFQTable:
                return await self.repository.add_rfq(RFQTable(
                    rfq_number=number,
                    requester_id=actor_id,
                    approver_id=data.approverId,
                    quotation_creator_id=data.quotationCreatorId,
                    customer_name=normalise_customer_name(data.customerName),
                    contact_person_name=normalise_person_name(data.contactPerson.name),
                    contact_person_gender=data.contactPerson.gender,
                    description=data.description or "",
                    confidence_rate=int(data.confidenceRate),
                    delivery_location=data.deliveryLocation.strip(),
                    competitor=data.competitor.strip(),
                    can_make=data.canMake,
                    project_ongoing=data.projectOngoing,
                    priority=data.priority,
                    expected_delivery_date=data.expectedDeliveryDate,
                    budget=data.budget,
                    currency=data.currency or "IDR",
                    status=RFQStatus.PENDING,
                    submitted_at=now,
                ))

            rfq = await self.sequence.allocate(DocumentType.RFQ, _persist, now)
            for item in data.items:
                await self.line_items.create_rfq_item(rfq.id, item)
            items = await self.repository.list_rfq_items(rfq.id)
        logger.info(f"RFQ {rfq.rfq_number} (ID {rfq.id}) created with {len(items)} items")

        await notify_best_effort(
            self.notifier, rfq.approver_id, "New RFQ Request",
            f"New RFQ request {rfq.rfq_number} for {rfq.customer_name} is waiting for your approval",
        )
        return rfq, items

    async def _decide(self, rfq_id: int, actor_id: str, notes: Optional[str], approve: bool, now: Optional[datetime]) -> RFQTable:
        verb = "approve" if approve else "reject"
        async with self.uow.begin():
            rfq = await self._rfq(rfq_id, for_update=True)
            if actor_id != rfq.approver_id:
                raise NotAuthorized(f"Only the assigned approver can {verb} this RFQ")
            if rfq.status != RFQStatus.PENDING:
                raise InvalidState(f"RFQ {rfq.rfq_number} has already been processed (status: {rfq.status.value})")

            now = now or utcnow()
            rfq.approval_notes = notes
            if approve:
                rfq.status = RFQStatus.APPROVED
                rfq.approval_decision = ApprovalDecision.BID
                rfq.approved_at = now
            else:
                rfq.status = RFQStatus.REJECTED
                rfq.approval_decision = ApprovalDecision.NO_BID
                rfq.rejected_at = now
            rfq = await self.repository.save(rfq)
        logger.info(f"RFQ {rfq.rfq_number} {rfq.status.value} by {actor_id}")
        return rfq

    async def approve(self, rfq_id: int, actor_id: str, notes: Optional[str] = None, now: Optional[datetime] = None) -> RFQTable:
        rfq = await self._decide(rfq_id, actor_id, notes, True, now)
        await notify_best_effort(
            self.notifier, rfq.requester_id, "RFQ Approved - Bid Decision",
            f"Your RFQ {rfq.rfq_number} has been approved with bid decision",
        )
        await notify_best_effort(
            self.notifier, rfq.quotation_creator_id, "RFQ Approved - Create Quotation",
            f"RFQ {rfq.rfq_number} has been approved. You can now create the quotation.",
        )
        return rfq

    async def reject(self, rfq_id: int, actor_id: str, notes: Optional[str] = None, now: Optional[datetime] = None) -> RFQTable:
        rfq = await self._decide(rfq_id, actor_id, notes, False, now)
        await notify_best_effort(
            self.notifier, rfq.requester_id, "RFQ Rejected - No Bid Decision",
            f"Your RFQ {rfq.rfq_number} has been rejected with no bid decision",
        )
        return rfq

    # Items
    def _ensure_item_editor(self, rfq: RFQTable, actor_id: str, action: str) -> None:
        if actor_id != rfq.requester_id:
            raise NotAuthorized(f"Only the RFQ requester can {action} items")
        if rfq.status != RFQStatus.PENDING:
            raise InvalidState(f"Cannot {action} items of a processed RFQ")

    async def add_item(self, rfq_id: int, actor_id: str, data: RFQItemInput) -> RFQItemTable:
        validate_rfq_item(data)
        async with self.uow.begin():
            self._ensure_item_editor(await self._rfq(rfq_id), actor_id, "add")
            return await self.line_items.create_rfq_item(rfq_id, data)

    async def update_item(self, item_id: int, actor_id: str, data: RFQItemUpdate) -> RFQItemTable:
        async with self.uow.begin():
            item = await self.line_items.get_rfq_item(item_id)
            self._ensure_item_editor(await self._rfq(item.rfq_id), actor_id, "update")
            for field in ("karoseri", "chassis", "price", "priceNet"):
                if field in data.model_fields_set and not getattr(data, field):
                    raise ValidationError("karoseri, chassis, price, and price net are required")
            return await self.line_items.update_rfq_item(item_id, data)

    async def delete_item(self, item_id: int, actor_id: str) -> None:
        async with self.uow.begin():
            item = await self.line_items.get_rfq_item(item_id)
            self._ensure_item_editor(await self._rfq(item.rfq_id), actor_id, "delete")
            if len(await self.repository.list_rfq_items(item.rfq_id)) <= 1:
                raise InvalidState("An RFQ must keep at least one item")
            await self.line_items.delete_rfq_item(item_id)

    # Queries
    async def get(self, rfq_id: int, actor_id: str) -> Tuple[RFQTable, List[RFQItemTable]]:
        rfq = await self._rfq(rfq_id)
        if not await self.access.can_view_rfq(actor_id, rfq):
            raise NotAuthorized("Access denied")
        # Items always come from an explicit query
        return rfq, await self.repository.list_rfq_items(rfq.id)

    async def list(self, actor_id: str, status: Optional[RFQStatus] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        can_approve = await self.access.has(actor_id, Capability.APPROVE_RFQ)
        can_create = await self.access.has(actor_id, Capability.QUOTATION_CREATE)
        page = max(page, 1)
        limit = max(limit, 1)
        rfqs, total = await self.repository.list_rfqs(
            requester_id=actor_id,
            approver_id=actor_id if can_approve else None,
            creator_id=actor_id if can_create else None,
            status=status,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return {
            "rfqs": rfqs,
            "pagination": Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
            "userRole": await self.access.rfq_view_role(actor_id),
        }

    async def pending_count(self, actor_id: str) -> int:
        return await self.repository.count_rfqs(approver_id=actor_id, status=RFQStatus.PENDING)

    async def approved_for_quotation(self, actor_id: str) -> List[RFQTable]:
        if not await self.access.has(actor_id, Capability.QUOTATION_CREATE):
            raise NotAuthorized("You do not have permission to create quotations")
        return await self.repository.list_rfqs_for_creator(actor_id, RFQStatus.APPROVED)
