from typing import Optional, List, Tuple, Set, Iterable

from sqlmodel import select, col
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from quotation_engine.models import QuotationListFilters
from quotation_engine.service.ports import AbstractRepository, DuplicateKeyError, QuotationScope
from shared.models_db import (
    DocumentType, RFQStatus,
    RFQTable, RFQItemTable, QuotationHeaderTable, QuotationOfferTable, OfferItemTable,
)
from shared.logging import get_logger

logger = get_logger(__name__)


class SQLModelRepository(AbstractRepository):
    """Concrete implementation of the repository using SQLModel and AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _add(self, entity):
        self.session.add(entity)
        await self.session.flush()  # Flush to assign IDs
        await self.session.refresh(entity) # Refresh to get DB defaults like created_at
        # No commit here, transaction managed externally
        return entity

    async def _add_unique(self, entity, label: str):
        """Inserts inside a savepoint so a uniqueness violation leaves the outer transaction usable."""
        try:
            async with self.session.begin_nested():
                self.session.add(entity)
                await self.session.flush()
        except IntegrityError as e:
            logger.warning(f"Uniqueness violation inserting {label}: {e.orig}")
            raise DuplicateKeyError(label) from e
        await self.session.refresh(entity)
        return entity

    async def _page(self, statement, offset: int, limit: Optional[int]):
        count_statement = select(func.count()).select_from(statement.order_by(None).subquery())
        total = (await self.session.execute(count_statement)).scalar_one()
        statement = statement.offset(offset)
        if limit is not None:
            statement = statement.limit(limit)
        rows = (await self.session.execute(statement)).scalars().all()
        return list(rows), total

    # Generic
    async def save(self, entity):
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        logger.debug(f"Saved {type(entity).__name__} ID {entity.id}")
        return entity

    async def delete(self, entity) -> None:
        logger.debug(f"Deleting {type(entity).__name__} ID {entity.id}")
        await self.session.delete(entity)
        await self.session.flush()

    # Document numbers
    @staticmethod
    def _number_column(doc_type: DocumentType):
        if doc_type == DocumentType.RFQ:
            return col(RFQTable.rfq_number)
        return col(QuotationHeaderTable.quotation_number)

    async def list_document_numbers(self, doc_type: DocumentType, suffix: str) -> List[str]:
        column = self._number_column(doc_type)
        result = await self.session.execute(select(column).where(column.like(f"%{suffix}")))
        numbers = list(result.scalars().all())
        logger.debug(f"Found {len(numbers)} {doc_type.value} numbers ending with {suffix}")
        return numbers

    async def document_number_exists(self, doc_type: DocumentType, number: str) -> bool:
        column = self._number_column(doc_type)
        result = await self.session.execute(select(func.count()).where(column == number))
        return result.scalar_one() > 0

    # RFQs
    async def add_rfq(self, rfq: RFQTable) -> RFQTable:
        logger.info(f"Adding RFQ {rfq.rfq_number}")
        rfq = await self._add_unique(rfq, f"RFQ {rfq.rfq_number}")
        logger.info(f"RFQ added/flushed with ID: {rfq.id}")
        return rfq

    async def get_rfq(self, rfq_id: int, for_update: bool = False) -> Optional[RFQTable]:
        logger.debug(f"Fetching RFQ by DB ID: {rfq_id} (for_update={for_update})")
        if not for_update:
            return await self.session.get(RFQTable, rfq_id)
        statement = (
            select(RFQTable)
            .where(RFQTable.id == rfq_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(statement)
        return result.scalar_one_or_none()

    async def get_rfq_by_quotation_id(self, quotation_id: int) -> Optional[RFQTable]:
        result = await self.session.execute(select(RFQTable).where(RFQTable.quotation_id == quotation_id))
        return result.scalars().first()

    async def list_rfqs(
        self,
        requester_id: Optional[str] = None,
        approver_id: Optional[str] = None,
        creator_id: Optional[str] = None,
        status: Optional[RFQStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[RFQTable], int]:
        relations = []
        if requester_id:
            relations.append(col(RFQTable.requester_id) == requester_id)
        if approver_id:
            relations.append(col(RFQTable.approver_id) == approver_id)
        if creator_id:
            relations.append(col(RFQTable.quotation_creator_id) == creator_id)
        statement = select(RFQTable)
        if relations:
            statement = statement.where(or_(*relations))
        if status:
            statement = statement.where(RFQTable.status == status)
        statement = statement.order_by(col(RFQTable.created_at).desc(), col(RFQTable.id).desc())
        rfqs, total = await self._page(statement, offset, limit)
        logger.debug(f"Listed {len(rfqs)} of {total} RFQs")
        return rfqs, total

    async def count_rfqs(self, approver_id: str, status: RFQStatus) -> int:
        statement = select(func.count()).select_from(RFQTable).where(
            RFQTable.approver_id == approver_id, RFQTable.status == status
        )
        return (await self.session.execute(statement)).scalar_one()

    async def list_rfqs_for_creator(self, creator_id: str, status: RFQStatus) -> List[RFQTable]:
        statement = (
            select(RFQTable)
            .where(RFQTable.quotation_creator_id == creator_id, RFQTable.status == status)
            .order_by(col(RFQTable.approved_at).desc(), col(RFQTable.id).desc())
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def list_linked_quotation_ids(self, requester_id: Optional[str] = None, approver_id: Optional[str] = None) -> List[int]:
        relations = []
        if requester_id:
            relations.append(col(RFQTable.requester_id) == requester_id)
        if approver_id:
            relations.append(col(RFQTable.approver_id) == approver_id)
        if not relations:
            return []
        statement = select(RFQTable.quotation_id).where(col(RFQTable.quotation_id).is_not(None), or_(*relations))
        result = await self.session.execute(statement)
        return [quotation_id for quotation_id in result.scalars().all()]

    # RFQ items
    async def add_rfq_item(self, item: RFQItemTable) -> RFQItemTable:
        logger.debug(f"Adding item #{item.item_number} to RFQ {item.rfq_id}")
        return await self._add(item)

    async def get_rfq_item(self, item_id: int) -> Optional[RFQItemTable]:
        return await self.session.get(RFQItemTable, item_id)

    async def list_rfq_items(self, rfq_id: int) -> List[RFQItemTable]:
        statement = select(RFQItemTable).where(RFQItemTable.rfq_id == rfq_id).order_by(col(RFQItemTable.item_number))
        result = await self.session.execute(statement)
        items = list(result.scalars().all())
        logger.debug(f"Found {len(items)} items for RFQ {rfq_id}")
        return items

    # Quotation headers
    async def add_quotation_header(self, header: QuotationHeaderTable) -> QuotationHeaderTable:
        logger.info(f"Adding quotation {header.quotation_number}")
        header = await self._add_unique(header, f"quotation {header.quotation_number}")
        logger.info(f"Quotation header added/flushed with ID: {header.id}")
        return header

    async def get_quotation_header(self, header_id: int) -> Optional[QuotationHeaderTable]:
        return await self.session.get(QuotationHeaderTable, header_id)

    async def get_quotation_header_by_number(self, quotation_number: str) -> Optional[QuotationHeaderTable]:
        statement = select(QuotationHeaderTable).where(QuotationHeaderTable.quotation_number == quotation_number)
        result = await self.session.execute(statement)
        return result.scalar_one_or_none()

    async def list_quotation_headers(
        self,
        filters: QuotationListFilters,
        scope: Optional[QuotationScope] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[QuotationHeaderTable], int]:
        statement = select(QuotationHeaderTable)
        if filters.customer:
            statement = statement.where(col(QuotationHeaderTable.customer_name).ilike(f"%{filters.customer}%"))
        if filters.marketing:
            statement = statement.where(col(QuotationHeaderTable.marketing_name).ilike(f"%{filters.marketing}%"))
        if filters.statusType:
            statement = statement.where(QuotationHeaderTable.status_type == filters.statusType)
        if filters.createdFrom:
            statement = statement.where(col(QuotationHeaderTable.created_at) >= filters.createdFrom)
        if filters.createdTo:
            statement = statement.where(col(QuotationHeaderTable.created_at) <= filters.createdTo)
        if filters.requesterId:
            statement = statement.where(QuotationHeaderTable.requester_id == filters.requesterId)
        if filters.approverId:
            statement = statement.where(QuotationHeaderTable.approver_id == filters.approverId)
        if filters.creatorId:
            statement = statement.where(QuotationHeaderTable.creator_id == filters.creatorId)

        if scope is not None:
            if scope.header_ids is not None:
                statement = statement.where(col(QuotationHeaderTable.id).in_(scope.header_ids))
            if scope.participant_id:
                statement = statement.where(or_(
                    col(QuotationHeaderTable.creator_id) == scope.participant_id,
                    col(QuotationHeaderTable.requester_id) == scope.participant_id,
                    col(QuotationHeaderTable.approver_id) == scope.participant_id,
                    col(QuotationHeaderTable.id).in_(scope.linked_header_ids),
                ))

        statement = statement.order_by(col(QuotationHeaderTable.created_at).desc(), col(QuotationHeaderTable.id).desc())
        headers, total = await self._page(statement, offset, limit)
        logger.debug(f"Listed {len(headers)} of {total} quotations")
        return headers, total

    # Offers
    async def add_offer(self, offer: QuotationOfferTable) -> QuotationOfferTable:
        logger.info(f"Adding offer {offer.offer_number} to quotation header {offer.quotation_header_id}")
        return await self._add_unique(offer, f"offer {offer.offer_number}")

    async def get_offer(self, offer_id: int) -> Optional[QuotationOfferTable]:
        return await self.session.get(QuotationOfferTable, offer_id)

    async def list_offers(self, header_id: int) -> List[QuotationOfferTable]:
        statement = (
            select(QuotationOfferTable)
            .where(QuotationOfferTable.quotation_header_id == header_id)
            .order_by(col(QuotationOfferTable.offer_number_in_quotation), col(QuotationOfferTable.revision))
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def offer_number_exists(self, offer_number: str) -> bool:
        statement = select(func.count()).select_from(QuotationOfferTable).where(QuotationOfferTable.offer_number == offer_number)
        return (await self.session.execute(statement)).scalar_one() > 0

    async def list_revisions_of(self, offer_id: int) -> List[QuotationOfferTable]:
        result = await self.session.execute(select(QuotationOfferTable).where(QuotationOfferTable.parent_offer_id == offer_id))
        return list(result.scalars().all())

    async def list_referenced_images(self, image_ids: Iterable[str]) -> Set[str]:
        wanted = set(image_ids)
        if not wanted:
            return set()
        # notes_images is a JSON list; containment is checked here rather than in SQL
        result = await self.session.execute(select(QuotationOfferTable.notes_images))
        referenced: Set[str] = set()
        for images in result.scalars().all():
            referenced.update(image for image in images or [] if image in wanted)
        logger.debug(f"{len(referenced)} of {len(wanted)} images are still referenced")
        return referenced

    # Offer items
    async def add_offer_item(self, item: OfferItemTable) -> OfferItemTable:
        logger.debug(f"Adding item #{item.item_number} to offer {item.quotation_offer_id}")
        return await self._add(item)

    async def get_offer_item(self, item_id: int) -> Optional[OfferItemTable]:
        return await self.session.get(OfferItemTable, item_id)

    async def list_offer_items(self, offer_id: int) -> List[OfferItemTable]:
        statement = (
            select(OfferItemTable)
            .where(OfferItemTable.quotation_offer_id == offer_id)
            .order_by(col(OfferItemTable.item_number))
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())
