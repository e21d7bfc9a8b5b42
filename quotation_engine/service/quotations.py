import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from quotation_engine.errors import NotAuthorized, NotFound, ValidationError
from quotation_engine.models import (
    CleanupResult, FollowUpStatus, HeaderUpdate, OfferInput, Pagination,
    QuotationHeaderInput, QuotationListFilters, QuotationStatusUpdate,
)
from quotation_engine.service.access import AccessFilter
from quotation_engine.service.formatting import is_blank, normalise_customer_name, normalise_person_name
from quotation_engine.service.offers import OfferService
from quotation_engine.service.ports import AbstractRepository, QuotationScope, UserDirectory
from quotation_engine.service.sequence import SequenceGenerator
from quotation_engine.service.unit_of_work import UnitOfWork
from shared.models_db import (
    DocumentType, QuotationHeaderTable, QuotationOfferTable, QuotationStatusType, utcnow,
)
from shared.logging import get_logger

logger = get_logger(__name__)

# Days since the last follow-up
FOLLOW_UP_GOOD_DAYS = 3
FOLLOW_UP_WARNING_DAYS = 6

LIST_MODES = ("all", "my_quotations", "created_by_me", "all_viewer")


def compute_follow_up_status(last_follow_up: Optional[datetime], now: Optional[datetime] = None) -> FollowUpStatus:
    if last_follow_up is None:
        return FollowUpStatus(status="danger", color="red", label="Never Followed Up")
    now = now or utcnow()
    days = math.floor((now - last_follow_up).total_seconds() / 86400)
    label = f"{days} day{'s' if days != 1 else ''} ago"
    if days <= FOLLOW_UP_GOOD_DAYS:
        return FollowUpStatus(status="good", color="green", label=label, daysSinceFollowUp=days)
    if days <= FOLLOW_UP_WARNING_DAYS:
        return FollowUpStatus(status="warning", color="yellow", label=label, daysSinceFollowUp=days)
    return FollowUpStatus(status="danger", color="red", label=label, daysSinceFollowUp=days)


async def marketing_name_for(users: Optional[UserDirectory], user_id: Optional[str]) -> str:
    """First name of the user, else their email, else 'Unknown'. Never raises."""
    if users is None or not user_id:
        return "Unknown"
    try:
        user = await users.get_user(user_id)
    except Exception as e:
        logger.warning(f"User lookup for {user_id} failed: {e}")
        return "Unknown"
    if user and user.fullName and user.fullName.strip():
        return user.fullName.split()[0]
    if user and user.email:
        return user.email
    return "Unknown"


class QuotationService:
    """Quotation Aggregate: header, status, follow-up and the grouped read model."""

    def __init__(
        self,
        repository: AbstractRepository,
        uow: UnitOfWork,
        offers: OfferService,
        access: Optional[AccessFilter] = None,
        users: Optional[UserDirectory] = None,
        sequence: Optional[SequenceGenerator] = None,
    ):
        self.repository = repository
        self.uow = uow
        self.offers = offers
        self.access = access
        self.users = users
        self.sequence = sequence or SequenceGenerator(repository)

    follow_up_status = staticmethod(compute_follow_up_status)

    async def _header(self, header_id: int) -> QuotationHeaderTable:
        header = await self.repository.get_quotation_header(header_id)
        if not header:
            raise NotFound("Quotation not found")
        return header

    async def _viewable(self, header_id: int, actor_id: Optional[str]) -> QuotationHeaderTable:
        header = await self._header(header_id)
        if self.access and actor_id and not await self.access.can_view_quotation(actor_id, header):
            raise NotAuthorized("You do not have access to this quotation")
        return header

    async def _editable(self, header_id: int, actor_id: Optional[str]) -> QuotationHeaderTable:
        header = await self._header(header_id)
        if self.access and actor_id and not await self.access.can_mutate_quotation(actor_id, header):
            raise NotAuthorized("You do not have access to modify this quotation")
        return header

    async def create_with_first_offer(
        self,
        header_data: QuotationHeaderInput,
        offer_data: OfferInput,
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[QuotationHeaderTable, QuotationOfferTable]:
        if is_blank(header_data.customerName) or header_data.contactPerson is None or is_blank(header_data.contactPerson.name):
            raise ValidationError("Customer name and contact person name are required")

        now = now or utcnow()
        creator_id = header_data.creatorId or actor_id
        requester_id = header_data.requesterId or actor_id
        marketing_name = header_data.marketingName
        if is_blank(marketing_name):
            marketing_name = await marketing_name_for(self.users, requester_id)

        async with self.uow.begin():
            async def _persist(number: str) -> QuotationHeaderTable:
                return await self.repository.add_quotation_header(QuotationHeaderTable(
                    quotation_number=number,
                    requester_id=requester_id,
                    approver_id=header_data.approverId or actor_id,
                    creator_id=creator_id,
                    marketing_name=marketing_name,
                    customer_name=normalise_customer_name(header_data.customerName),
                    contact_person_name=normalise_person_name(header_data.contactPerson.name),
                    contact_person_gender=header_data.contactPerson.gender,
                    status_type=QuotationStatusType.OPEN,
                    last_follow_up_date=now,
                ))

            header = await self.sequence.allocate(DocumentType.QUOTATION, _persist, now)
            offer = await self.offers.create_original(header.quotation_number, offer_data)
            logger.info(f"Quotation {header.quotation_number} (ID {header.id}) created by {actor_id}")
            return header, offer

    async def create_quotation(self, header_data: QuotationHeaderInput, offer_data: OfferInput, actor_id: str) -> Tuple[QuotationHeaderTable, QuotationOfferTable]:
        """Direct creation from the route layer; requires the create capability."""
        if self.access and not await self.access.can_create_quotation(actor_id):
            raise NotAuthorized("You do not have permission to create quotations")
        return await self.create_with_first_offer(header_data, offer_data, actor_id)

    async def preview_number(self, actor_id: str, now: Optional[datetime] = None) -> str:
        """Next quotation number for the month of ``now``; nothing is reserved."""
        if self.access and not await self.access.can_create_quotation(actor_id):
            raise NotAuthorized("You do not have permission to create quotations")
        return await self.sequence.next_number(DocumentType.QUOTATION, now)

    async def add_offer(self, header_id: int, offer_data: OfferInput, actor_id: Optional[str] = None) -> QuotationOfferTable:
        """Opens the next offer slot on an existing quotation."""
        header = await self._header(header_id)
        return await self.offers.create_original(header.quotation_number, offer_data, actor_id)

    async def set_status(self, header_id: int, update: QuotationStatusUpdate, actor_id: str, now: Optional[datetime] = None) -> QuotationHeaderTable:
        if update.type in (QuotationStatusType.LOSS, QuotationStatusType.CLOSE) and is_blank(update.reason):
            raise ValidationError(f"Reason is required when status is {update.type.value}")

        async with self.uow.begin():
            header = await self._editable(header_id, actor_id)
            offers = await self.repository.list_offers(header.id)
            header.status_type = update.type
            header.status_reason = update.reason.strip() if update.reason and update.reason.strip() else None

            if update.type == QuotationStatusType.WIN:
                if update.selectedOfferId is not None:
                    offer = next((o for o in offers if o.id == update.selectedOfferId), None)
                    if offer is None:
                        raise ValidationError("Selected offer does not belong to this quotation")
                    item_ids = {item.id for item in await self.repository.list_offer_items(offer.id)}
                    header.selected_offer_id = offer.id
                    header.selected_offer_item_ids = [i for i in update.selectedOfferItemIds if i in item_ids]
                    await self.offers.apply_selection(offer, header.selected_offer_item_ids, actor_id, now)
            else:
                header.selected_offer_id = None
                header.selected_offer_item_ids = []
                for offer in offers:
                    await self.offers.clear_acceptance(offer)

            header = await self.repository.save(header)
            logger.info(f"Quotation {header.quotation_number} status set to {update.type.value} by {actor_id}")
            return header

    async def touch_follow_up(self, header_id: int, actor_id: Optional[str] = None, now: Optional[datetime] = None) -> QuotationHeaderTable:
        async with self.uow.begin():
            header = await self._editable(header_id, actor_id)
            header.last_follow_up_date = now or utcnow()
            header = await self.repository.save(header)
            logger.info(f"Quotation {header.quotation_number} followed up")
            return header

    async def update_header(self, header_id: int, data: HeaderUpdate, actor_id: Optional[str] = None) -> QuotationHeaderTable:
        async with self.uow.begin():
            header = await self._editable(header_id, actor_id)
            if data.customerName is not None:
                if is_blank(data.customerName):
                    raise ValidationError("Customer name cannot be empty")
                header.customer_name = normalise_customer_name(data.customerName)
            if data.contactPerson is not None:
                if is_blank(data.contactPerson.name):
                    raise ValidationError("Contact person name cannot be empty")
                header.contact_person_name = normalise_person_name(data.contactPerson.name)
                header.contact_person_gender = data.contactPerson.gender
            header = await self.repository.save(header)
            logger.info(f"Quotation {header.quotation_number} header updated")
            return header

    async def add_progress(self, header_id: int, text: str, actor_id: Optional[str] = None) -> QuotationHeaderTable:
        if is_blank(text):
            raise ValidationError("Progress text is required")
        async with self.uow.begin():
            header = await self._editable(header_id, actor_id)
            header.progress = [*(header.progress or []), text.strip()]
            return await self.repository.save(header)

    async def delete_quotation(self, header_id: int, actor_id: Optional[str] = None) -> CleanupResult:
        """Deletes the header with all offers and items, then cleans up orphaned images."""
        async with self.uow.begin():
            header = await self._editable(header_id, actor_id)
            images: List[str] = []
            # Later revisions first, so no parent goes before its children
            for offer in sorted(await self.repository.list_offers(header.id), key=lambda o: o.revision, reverse=True):
                images.extend(await self.offers.remove(offer, header))
            rfq = await self.repository.get_rfq_by_quotation_id(header.id)
            if rfq:
                rfq.quotation_id = None
                await self.repository.save(rfq)
            await self.repository.delete(header)
            logger.info(f"Quotation {header.quotation_number} (ID {header_id}) deleted")
        return await self.offers.cleanup_orphaned_images(images)

    # Read model
    async def _offer_view(self, offer: QuotationOfferTable) -> Dict[str, Any]:
        return {"offer": offer, "items": await self.repository.list_offer_items(offer.id)}

    async def _view(self, header: QuotationHeaderTable, now: Optional[datetime] = None) -> Dict[str, Any]:
        by_slot: Dict[int, List[Dict[str, Any]]] = {}
        for offer in await self.repository.list_offers(header.id):
            by_slot.setdefault(offer.offer_number_in_quotation, []).append(await self._offer_view(offer))
        groups = []
        for slot in sorted(by_slot):
            chain = sorted(by_slot[slot], key=lambda view: view["offer"].revision)
            groups.append({"slot": slot, "original": chain[0], "revisions": chain[1:]})
        return {
            "header": header,
            "followUpStatus": compute_follow_up_status(header.last_follow_up_date, now),
            "offers": groups,
        }

    async def get_quotation(self, header_id: int, actor_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        header = await self._viewable(header_id, actor_id)
        return await self._view(header, now)

    async def list_quotations(
        self,
        actor_id: str,
        filters: Optional[QuotationListFilters] = None,
        mode: str = "all",
        page: int = 1,
        limit: int = 10,
    ) -> Dict[str, Any]:
        filters = filters or QuotationListFilters()
        scope: Optional[QuotationScope] = None
        if mode not in LIST_MODES:
            raise ValidationError(f"Unknown filter mode '{mode}'")
        if mode == "my_quotations":
            scope = QuotationScope(header_ids=await self.repository.list_linked_quotation_ids(requester_id=actor_id))
        elif mode == "created_by_me":
            filters = filters.model_copy(update={"creatorId": actor_id})
        elif mode == "all_viewer":
            if self.access and not await self.access.can_view_all_quotations(actor_id):
                raise NotAuthorized("You do not have permission to view all quotations")
        elif self.access:
            scope = await self.access.quotation_scope(actor_id)

        page = max(page, 1)
        limit = max(limit, 1)
        headers, total = await self.repository.list_quotation_headers(filters, scope, offset=(page - 1) * limit, limit=limit)
        now = utcnow()
        return {
            "quotations": [await self._view(header, now) for header in headers],
            "pagination": Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
        }
