import re
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, TYPE_CHECKING

from quotation_engine.errors import AlreadyExists, InvalidState, NotAuthorized, NotFound
from quotation_engine.models import CleanupResult, OfferInput, OfferItemInput, OfferItemUpdate, OfferUpdate
from quotation_engine.service.line_items import LineItemStore
from quotation_engine.service.ports import AbstractRepository, AttachmentStore, DuplicateKeyError
from quotation_engine.service.unit_of_work import UnitOfWork
from shared.models_db import OfferItemTable, QuotationHeaderTable, QuotationOfferTable, utcnow
from shared.logging import get_logger

if TYPE_CHECKING:
    from quotation_engine.service.access import AccessFilter

logger = get_logger(__name__)

_REVISION_SUFFIX = re.compile(r"-Rev\d+$")


def compute_totals(items: Sequence[OfferItemTable]) -> dict:
    """Cached offer totals derived from its live items."""
    total = len(items)
    accepted = sum(1 for item in items if item.is_accepted)
    total_price = sum(item.price or 0 for item in items)
    total_netto = sum(item.netto or 0 for item in items)
    return {
        "total_items_count": total,
        "accepted_items_count": accepted,
        "total_price": total_price,
        "total_netto": total_netto,
        "total_discount": total_price - total_netto,
        "is_fully_accepted": total > 0 and accepted == total,
        "is_partially_accepted": 0 < accepted < total,
    }


def base_offer_number(offer_number: str) -> str:
    """'1/QUO/STM/III/2025-2-Rev3' -> '1/QUO/STM/III/2025-2'"""
    return _REVISION_SUFFIX.sub("", offer_number)


def merge_images(*groups: Iterable[str]) -> List[str]:
    """Order-preserving, de-duplicated union of image references."""
    merged: List[str] = []
    for group in groups:
        for image in group or []:
            if image and image not in merged:
                merged.append(image)
    return merged


def _stamp(item: OfferItemTable, accepted: bool, actor_id: Optional[str], now: datetime) -> None:
    item.is_accepted = accepted
    if accepted:
        item.accepted_at = now
        item.accepted_by = actor_id
    else:
        item.accepted_at = None
        item.accepted_by = None


class OfferService:
    """Offer Aggregate: offers, their revision chains and cached totals.

    Every change to an offer's items ends with a totals recompute from the
    stored items, within the same unit of work.
    """

    def __init__(
        self,
        repository: AbstractRepository,
        uow: UnitOfWork,
        line_items: Optional[LineItemStore] = None,
        access: Optional["AccessFilter"] = None,
        attachments: Optional[AttachmentStore] = None,
    ):
        self.repository = repository
        self.uow = uow
        self.line_items = line_items or LineItemStore(repository)
        self.access = access
        self.attachments = attachments

    async def _guard(self, header_id: int, actor_id: Optional[str]) -> QuotationHeaderTable:
        header = await self.repository.get_quotation_header(header_id)
        if not header:
            raise NotFound("Quotation not found")
        if self.access and actor_id and not await self.access.can_mutate_quotation(actor_id, header):
            raise NotAuthorized("You do not have access to modify this quotation")
        return header

    async def get_offer(self, offer_id: int) -> QuotationOfferTable:
        offer = await self.repository.get_offer(offer_id)
        if not offer:
            raise NotFound("Quotation offer not found")
        return offer

    async def _recompute(self, offer: QuotationOfferTable) -> QuotationOfferTable:
        items = await self.repository.list_offer_items(offer.id)
        for field, value in compute_totals(items).items():
            setattr(offer, field, value)
        offer = await self.repository.save(offer)
        logger.debug(f"Offer {offer.id} totals: price={offer.total_price}, netto={offer.total_netto}, accepted={offer.accepted_items_count}/{offer.total_items_count}")
        return offer

    async def recompute_totals(self, offer_id: int) -> QuotationOfferTable:
        async with self.uow.begin():
            return await self._recompute(await self.get_offer(offer_id))

    async def _insert(self, offer: QuotationOfferTable) -> QuotationOfferTable:
        try:
            return await self.repository.add_offer(offer)
        except DuplicateKeyError:
            logger.warning(f"Offer number {offer.offer_number} collided on insert")
            raise AlreadyExists(f"Offer {offer.offer_number} already exists")

    async def create_original(self, quotation_number: str, data: OfferInput, actor_id: Optional[str] = None) -> QuotationOfferTable:
        """Adds a new offer slot to a quotation: '{quotationNumber}-{slot}'."""
        async with self.uow.begin():
            header = await self.repository.get_quotation_header_by_number(quotation_number)
            if not header:
                raise NotFound("Quotation not found")
            await self._guard(header.id, actor_id)

            offers = await self.repository.list_offers(header.id)
            slot = max((o.offer_number_in_quotation for o in offers if o.revision == 0), default=0) + 1
            offer = await self._insert(QuotationOfferTable(
                quotation_header_id=header.id,
                offer_number=f"{quotation_number}-{slot}",
                offer_number_in_quotation=slot,
                revision=0,
                exclude_ppn=data.excludePPN,
                notes=data.notes,
                notes_images=merge_images(data.notesImages),
            ))
            await self.line_items.create_offer_items(offer.id, data.offerItems)
            offer = await self._recompute(offer)
            logger.info(f"Offer {offer.offer_number} (ID {offer.id}) created with {offer.total_items_count} items")
            return offer

    async def create_revision(self, parent_offer_id: int, data: OfferInput, actor_id: Optional[str] = None) -> QuotationOfferTable:
        """Branches revision N+1 off an offer, inheriting its slot and images.

        Without new items the parent's items are copied with acceptance reset.
        """
        async with self.uow.begin():
            parent = await self.get_offer(parent_offer_id)
            await self._guard(parent.quotation_header_id, actor_id)

            revision = parent.revision + 1
            offer_number = f"{base_offer_number(parent.offer_number)}-Rev{revision}"
            if await self.repository.offer_number_exists(offer_number):
                raise AlreadyExists(f"Revision {revision} of offer {base_offer_number(parent.offer_number)} already exists")

            offer = await self._insert(QuotationOfferTable(
                quotation_header_id=parent.quotation_header_id,
                offer_number=offer_number,
                offer_number_in_quotation=parent.offer_number_in_quotation,
                revision=revision,
                parent_offer_id=parent.id,
                exclude_ppn=data.excludePPN,
                notes=data.notes if data.notes is not None else parent.notes,
                notes_images=merge_images(parent.notes_images, data.notesImages),
            ))

            if data.offerItems:
                await self.line_items.create_offer_items(offer.id, data.offerItems)
            else:
                parent_items = await self.repository.list_offer_items(parent.id)
                await self.line_items.create_offer_items(offer.id, [
                    OfferItemInput(
                        karoseri=item.karoseri,
                        chassis=item.chassis,
                        drawingSpecification=item.drawing_specification_id,
                        specificationMode=item.specification_mode,
                        specifications=list(item.specifications or []),
                        price=item.price,
                        discountType=item.discount_type,
                        discountValue=item.discount_value,
                        netto=item.netto,
                        excludePPN=item.exclude_ppn,
                        quantity=item.quantity,
                        notes=item.notes,
                    )
                    for item in parent_items
                ])
            offer = await self._recompute(offer)
            logger.info(f"Revision {offer.offer_number} (ID {offer.id}) created from offer {parent.id}")
            return offer

    async def update_offer(self, offer_id: int, data: OfferUpdate, actor_id: Optional[str] = None) -> QuotationOfferTable:
        async with self.uow.begin():
            offer = await self.get_offer(offer_id)
            header = await self._guard(offer.quotation_header_id, actor_id)
            if data.notes is not None:
                offer.notes = data.notes
            if data.notesImages is not None:
                offer.notes_images = merge_images(data.notesImages)
            if data.excludePPN is not None:
                offer.exclude_ppn = data.excludePPN
            if data.offerItems:
                replaced = [item.id for item in await self.repository.list_offer_items(offer.id)]
                await self.line_items.replace_offer_items(offer.id, data.offerItems)
                await self._prune_selection(offer, header, replaced)
            offer = await self._recompute(offer)
            logger.info(f"Offer {offer_id} updated")
            return offer

    async def _prune_selection(self, offer: QuotationOfferTable, header: QuotationHeaderTable, removed_ids: Iterable[int]) -> None:
        """Drops deleted items of ``offer`` from the header's win selection."""
        if header.selected_offer_id != offer.id:
            return
        removed = set(removed_ids)
        selected = list(header.selected_offer_item_ids or [])
        kept = [item_id for item_id in selected if item_id not in removed]
        if kept != selected:
            header.selected_offer_item_ids = kept
            await self.repository.save(header)
            logger.info(f"Quotation {header.quotation_number} selection pruned to {len(kept)} item(s)")

    async def remove(self, offer: QuotationOfferTable, header: QuotationHeaderTable) -> List[str]:
        """Deletes an offer's items and then the offer, inside the caller's unit of work.

        Returns the image references the offer held.
        """
        images = list(offer.notes_images or [])
        if header.selected_offer_id == offer.id:
            header.selected_offer_id = None
            header.selected_offer_item_ids = []
            await self.repository.save(header)
        for item in await self.repository.list_offer_items(offer.id):
            await self.repository.delete(item)
        await self.repository.delete(offer)
        logger.info(f"Offer {offer.offer_number} (ID {offer.id}) deleted")
        return images

    async def delete_offer(self, offer_id: int, actor_id: Optional[str] = None) -> CleanupResult:
        async with self.uow.begin():
            offer = await self.get_offer(offer_id)
            header = await self._guard(offer.quotation_header_id, actor_id)
            revisions = await self.repository.list_revisions_of(offer.id)
            if revisions:
                raise InvalidState(
                    f"Offer {offer.offer_number} has {len(revisions)} revision(s); delete the revisions first"
                )
            images = await self.remove(offer, header)
        return await self.cleanup_orphaned_images(images)

    async def cleanup_orphaned_images(self, image_ids: Iterable[str]) -> CleanupResult:
        """Deletes the given images unless a stored offer still references them.

        Runs after the deleting transaction has committed; storage failures are
        reported as a warning on the result.
        """
        candidates = set(image_ids or [])
        if not candidates:
            return CleanupResult()
        referenced = await self.repository.list_referenced_images(candidates)
        orphaned = sorted(candidates - referenced)
        result = CleanupResult(keptCount=len(candidates & referenced))
        if not orphaned:
            return result
        if self.attachments is None:
            result.warning = f"{len(orphaned)} orphaned image(s) were not deleted: no attachment store configured"
            logger.warning(result.warning)
            return result
        try:
            result.deletedCount = await self.attachments.delete_images(orphaned)
            logger.info(f"Orphaned image cleanup: deleted {result.deletedCount}, kept {result.keptCount}")
        except Exception as e:
            logger.error(f"Orphaned image cleanup failed for {len(orphaned)} image(s): {e}", exc_info=True)
            result.warning = f"Failed to clean up {len(orphaned)} orphaned image(s): {e}"
        return result

    # Items
    async def add_item(self, offer_id: int, data: OfferItemInput, actor_id: Optional[str] = None) -> OfferItemTable:
        async with self.uow.begin():
            offer = await self.get_offer(offer_id)
            await self._guard(offer.quotation_header_id, actor_id)
            item = await self.line_items.create_offer_item(offer_id, data)
            await self._recompute(offer)
            return item

    async def update_item(self, item_id: int, data: OfferItemUpdate, actor_id: Optional[str] = None) -> OfferItemTable:
        async with self.uow.begin():
            item = await self.line_items.get_offer_item(item_id)
            offer = await self.get_offer(item.quotation_offer_id)
            await self._guard(offer.quotation_header_id, actor_id)
            item = await self.line_items.update_offer_item(item_id, data)
            await self._recompute(offer)
            return item

    async def delete_item(self, item_id: int, actor_id: Optional[str] = None) -> QuotationOfferTable:
        async with self.uow.begin():
            item = await self.line_items.get_offer_item(item_id)
            offer = await self.get_offer(item.quotation_offer_id)
            header = await self._guard(offer.quotation_header_id, actor_id)
            await self.line_items.delete_offer_item(item_id)
            await self._prune_selection(offer, header, [item_id])
            return await self._recompute(offer)

    async def toggle_acceptance(self, item_id: int, actor_id: str) -> OfferItemTable:
        async with self.uow.begin():
            item = await self.line_items.get_offer_item(item_id)
            offer = await self.get_offer(item.quotation_offer_id)
            await self._guard(offer.quotation_header_id, actor_id)
            _stamp(item, not item.is_accepted, actor_id, utcnow())
            item = await self.repository.save(item)
            await self._recompute(offer)
            logger.info(f"Offer item {item_id} acceptance set to {item.is_accepted} by {actor_id}")
            return item

    async def apply_selection(self, offer: QuotationOfferTable, selected_item_ids: Iterable[int], actor_id: Optional[str], now: Optional[datetime] = None) -> QuotationOfferTable:
        """Accepts exactly the selected items of ``offer``; runs inside the caller's unit of work."""
        now = now or utcnow()
        selected = set(selected_item_ids or [])
        for item in await self.repository.list_offer_items(offer.id):
            accept = item.id in selected
            if accept != item.is_accepted:
                _stamp(item, accept, actor_id, now)
                await self.repository.save(item)
        return await self._recompute(offer)

    async def clear_acceptance(self, offer: QuotationOfferTable) -> QuotationOfferTable:
        """Un-accepts every item of ``offer``; runs inside the caller's unit of work."""
        for item in await self.repository.list_offer_items(offer.id):
            if item.is_accepted or item.accepted_at or item.accepted_by:
                _stamp(item, False, None, utcnow())
                await self.repository.save(item)
        return await self._recompute(offer)
