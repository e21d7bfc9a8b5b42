from typing import List, Sequence, Union

from quotation_engine.errors import InvalidState, NotFound
from quotation_engine.models import OfferItemInput, OfferItemUpdate, RFQItemInput, RFQItemUpdate
from quotation_engine.service.formatting import normalise_code, normalise_reference
from quotation_engine.service.ports import AbstractRepository
from shared.models_db import OfferItemTable, RFQItemTable, RFQStatus, RFQTable, QuotationOfferTable
from shared.logging import get_logger

logger = get_logger(__name__)

LineItem = Union[RFQItemTable, OfferItemTable]

# API field -> column, for partial updates
_RFQ_ITEM_FIELDS = {
    "karoseri": "karoseri",
    "chassis": "chassis",
    "drawingSpecification": "drawing_specification_id",
    "specifications": "specifications",
    "price": "price",
    "priceNet": "price_net",
    "notes": "notes",
}
_OFFER_ITEM_FIELDS = {
    "karoseri": "karoseri",
    "chassis": "chassis",
    "drawingSpecification": "drawing_specification_id",
    "specificationMode": "specification_mode",
    "specifications": "specifications",
    "price": "price",
    "discountType": "discount_type",
    "discountValue": "discount_value",
    "netto": "netto",
    "excludePPN": "exclude_ppn",
    "quantity": "quantity",
    "notes": "notes",
}


def next_item_number(siblings: Sequence[LineItem]) -> int:
    return max((item.item_number for item in siblings), default=0) + 1


def _normalised(column: str, value):
    if column in ("karoseri", "chassis"):
        return normalise_code(value)
    if column == "drawing_specification_id":
        return normalise_reference(value)
    return value


def rfq_item_from_input(rfq_id: int, item_number: int, data: RFQItemInput) -> RFQItemTable:
    return RFQItemTable(
        rfq_id=rfq_id,
        item_number=item_number,
        karoseri=normalise_code(data.karoseri),
        chassis=normalise_code(data.chassis),
        drawing_specification_id=normalise_reference(data.drawingSpecification),
        specifications=[category.model_dump() for category in data.specifications],
        price=data.price,
        price_net=data.priceNet,
        notes=data.notes,
    )


def offer_item_from_input(offer_id: int, item_number: int, data: OfferItemInput) -> OfferItemTable:
    return OfferItemTable(
        quotation_offer_id=offer_id,
        item_number=item_number,
        karoseri=normalise_code(data.karoseri),
        chassis=normalise_code(data.chassis),
        drawing_specification_id=normalise_reference(data.drawingSpecification),
        specification_mode=data.specificationMode,
        specifications=list(data.specifications),
        price=data.price,
        discount_type=data.discountType,
        discount_value=data.discountValue,
        netto=data.netto,
        exclude_ppn=data.excludePPN,
        quantity=data.quantity,
        notes=data.notes,
    )


class LineItemStore:
    """Numbered line items under an RFQ or an offer.

    Item numbers are dense: a new item takes max+1 and a deletion re-packs the
    remaining siblings to 1..N in their previous order. Recomputing offer
    totals after a change is the Offer Aggregate's job, not this store's.
    """

    def __init__(self, repository: AbstractRepository):
        self.repository = repository

    async def _repack(self, siblings: Sequence[LineItem]) -> None:
        for position, item in enumerate(sorted(siblings, key=lambda i: i.item_number), start=1):
            if item.item_number != position:
                logger.debug(f"Renumbering item {item.id}: {item.item_number} -> {position}")
                item.item_number = position
                await self.repository.save(item)

    @staticmethod
    def _apply(item: LineItem, changes: dict, fields: dict) -> None:
        for api_name, value in changes.items():
            column = fields.get(api_name)
            if column is None:
                continue
            if column == "specifications":
                value = list(value or []) # JSON columns are reassigned, never mutated
            setattr(item, column, _normalised(column, value))

    # RFQ items
    async def _editable_rfq(self, rfq_id: int) -> RFQTable:
        rfq = await self.repository.get_rfq(rfq_id)
        if not rfq:
            raise NotFound("RFQ not found")
        if rfq.status != RFQStatus.PENDING:
            raise InvalidState("Cannot modify items of a processed RFQ")
        return rfq

    async def get_rfq_item(self, item_id: int) -> RFQItemTable:
        item = await self.repository.get_rfq_item(item_id)
        if not item:
            raise NotFound("RFQ item not found")
        return item

    async def create_rfq_item(self, rfq_id: int, data: RFQItemInput) -> RFQItemTable:
        await self._editable_rfq(rfq_id)
        siblings = await self.repository.list_rfq_items(rfq_id)
        item = await self.repository.add_rfq_item(rfq_item_from_input(rfq_id, next_item_number(siblings), data))
        logger.info(f"RFQ item #{item.item_number} (ID {item.id}) added to RFQ {rfq_id}")
        return item

    async def update_rfq_item(self, item_id: int, data: RFQItemUpdate) -> RFQItemTable:
        item = await self.get_rfq_item(item_id)
        await self._editable_rfq(item.rfq_id)
        changes = data.model_dump(exclude_unset=True)
        if "specifications" in changes and changes["specifications"] is not None:
            changes["specifications"] = [category.model_dump() for category in data.specifications]
        self._apply(item, {k: v for k, v in changes.items() if v is not None or k in ("drawingSpecification", "notes")}, _RFQ_ITEM_FIELDS)
        item = await self.repository.save(item)
        logger.info(f"RFQ item {item_id} updated")
        return item

    async def delete_rfq_item(self, item_id: int) -> int:
        """Deletes an RFQ item and re-packs its siblings. Returns the RFQ id."""
        item = await self.get_rfq_item(item_id)
        rfq_id = item.rfq_id
        await self._editable_rfq(rfq_id)
        await self.repository.delete(item)
        await self._repack(await self.repository.list_rfq_items(rfq_id))
        logger.info(f"RFQ item {item_id} deleted from RFQ {rfq_id}")
        return rfq_id

    # Offer items
    async def _offer(self, offer_id: int) -> QuotationOfferTable:
        offer = await self.repository.get_offer(offer_id)
        if not offer:
            raise NotFound("Quotation offer not found")
        return offer

    async def get_offer_item(self, item_id: int) -> OfferItemTable:
        item = await self.repository.get_offer_item(item_id)
        if not item:
            raise NotFound("Offer item not found")
        return item

    async def create_offer_item(self, offer_id: int, data: OfferItemInput) -> OfferItemTable:
        await self._offer(offer_id)
        siblings = await self.repository.list_offer_items(offer_id)
        item = await self.repository.add_offer_item(offer_item_from_input(offer_id, next_item_number(siblings), data))
        logger.info(f"Offer item #{item.item_number} (ID {item.id}) added to offer {offer_id}")
        return item

    async def create_offer_items(self, offer_id: int, items: Sequence[OfferItemInput]) -> List[OfferItemTable]:
        """Bulk insert numbered 1..N in the given order, for a freshly created offer."""
        created = []
        for number, data in enumerate(items, start=1):
            created.append(await self.repository.add_offer_item(offer_item_from_input(offer_id, number, data)))
        logger.debug(f"Created {len(created)} items for offer {offer_id}")
        return created

    async def replace_offer_items(self, offer_id: int, items: Sequence[OfferItemInput]) -> List[OfferItemTable]:
        for existing in await self.repository.list_offer_items(offer_id):
            await self.repository.delete(existing)
        return await self.create_offer_items(offer_id, items)

    async def update_offer_item(self, item_id: int, data: OfferItemUpdate) -> OfferItemTable:
        item = await self.get_offer_item(item_id)
        await self._offer(item.quotation_offer_id)
        changes = data.model_dump(exclude_unset=True)
        self._apply(item, {k: v for k, v in changes.items() if v is not None or k in ("drawingSpecification", "notes")}, _OFFER_ITEM_FIELDS)
        item = await self.repository.save(item)
        logger.info(f"Offer item {item_id} updated")
        return item

    async def delete_offer_item(self, item_id: int) -> int:
        """Deletes an offer item and re-packs its siblings. Returns the offer id."""
        item = await self.get_offer_item(item_id)
        offer_id = item.quotation_offer_id
        await self.repository.delete(item)
        await self._repack(await self.repository.list_offer_items(offer_id))
        logger.info(f"Offer item {item_id} deleted from offer {offer_id}")
        return offer_id
