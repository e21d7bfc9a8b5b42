from datetime import datetime
from typing import Dict, List, Optional

from quotation_engine.errors import InvalidState, NotAuthorized, NotFound
from quotation_engine.models import (
    ContactPerson, OfferInput, OfferItemInput, OfferOverrides,
    QuotationHeaderInput, QuotationHeaderOverrides,
)
from quotation_engine.service.notifications import notify_best_effort
from quotation_engine.service.ports import AbstractRepository, Notifier, UserDirectory
from quotation_engine.service.quotations import QuotationService, marketing_name_for
from quotation_engine.service.unit_of_work import UnitOfWork
from shared.models_db import DiscountType, RFQItemTable, RFQStatus, RFQTable, utcnow
from shared.logging import get_logger

logger = get_logger(__name__)


def offer_items_from_rfq(items: List[RFQItemTable]) -> List[OfferItemInput]:
    """RFQ lines become offer lines in RFQ item order; netto is the RFQ's net price."""
    return [
        OfferItemInput(
            karoseri=item.karoseri,
            chassis=item.chassis,
            drawingSpecification=item.drawing_specification_id,
            specifications=list(item.specifications or []),
            price=item.price,
            discountType=DiscountType.PERCENTAGE,
            discountValue=0,
            netto=item.price_net,
            notes=item.notes,
        )
        for item in sorted(items, key=lambda i: i.item_number)
    ]


def header_from_rfq(rfq: RFQTable, overrides: QuotationHeaderOverrides, marketing_name: str) -> QuotationHeaderInput:
    # Actor ids always follow the RFQ, whatever the caller sent.
    contact = overrides.contactPerson or ContactPerson(name=rfq.contact_person_name, gender=rfq.contact_person_gender)
    return QuotationHeaderInput(
        requesterId=rfq.requester_id,
        approverId=rfq.approver_id,
        creatorId=rfq.quotation_creator_id,
        marketingName=marketing_name,
        customerName=overrides.customerName or rfq.customer_name,
        contactPerson=contact,
    )


class ConversionBridge:
    """Turns an approved RFQ into a quotation with its first offer.

    Quotation creation and the RFQ's move to quotation_created commit together
    in one unit of work.
    """

    def __init__(
        self,
        repository: AbstractRepository,
        uow: UnitOfWork,
        quotations: QuotationService,
        users: Optional[UserDirectory] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.repository = repository
        self.uow = uow
        self.quotations = quotations
        self.users = users
        self.notifier = notifier

    async def convert(
        self,
        rfq_id: int,
        actor_id: str,
        header_overrides: Optional[QuotationHeaderOverrides] = None,
        offer_overrides: Optional[OfferOverrides] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, object]:
        header_overrides = header_overrides or QuotationHeaderOverrides()
        offer_overrides = offer_overrides or OfferOverrides()
        now = now or utcnow()

        async with self.uow.begin():
            rfq = await self.repository.get_rfq(rfq_id, for_update=True)
            if not rfq:
                raise NotFound("RFQ not found")
            if rfq.status != RFQStatus.APPROVED:
                raise InvalidState(f"RFQ {rfq.rfq_number} must be approved before creating a quotation (status: {rfq.status.value})")
            if actor_id != rfq.quotation_creator_id:
                raise NotAuthorized("Only the assigned quotation creator can create a quotation from this RFQ")

            items = await self.repository.list_rfq_items(rfq.id)
            marketing_name = await marketing_name_for(self.users, rfq.requester_id)
            header, offer = await self.quotations.create_with_first_offer(
                header_from_rfq(rfq, header_overrides, marketing_name),
                OfferInput(
                    notes=offer_overrides.notes,
                    notesImages=offer_overrides.notesImages,
                    excludePPN=offer_overrides.excludePPN,
                    offerItems=offer_items_from_rfq(items),
                ),
                actor_id,
                now,
            )

            rfq.status = RFQStatus.QUOTATION_CREATED
            rfq.quotation_id = header.id
            rfq.quotation_created_at = now
            rfq = await self.repository.save(rfq)
        logger.info(f"RFQ {rfq.rfq_number} converted to quotation {header.quotation_number} (ID {header.id}) by {actor_id}")

        description = f"Quotation {header.quotation_number} has been created from RFQ {rfq.rfq_number}"
        for user_id in (rfq.requester_id, rfq.approver_id):
            await notify_best_effort(self.notifier, user_id, "Quotation Created", description)
        return {"rfq": rfq, "header": header, "offer": offer}
