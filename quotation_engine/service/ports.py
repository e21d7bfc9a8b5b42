from abc import ABC, abstractmethod
from typing import Optional, List, Tuple, Set, Iterable

from pydantic import BaseModel

from quotation_engine.models import PlatformUser, QuotationListFilters
from shared.models_db import (
    DocumentType, RFQStatus,
    RFQTable, RFQItemTable, QuotationHeaderTable, QuotationOfferTable, OfferItemTable,
)


class DuplicateKeyError(Exception):
    """Raised by a repository when an insert violates a uniqueness constraint."""


class QuotationScope(BaseModel):
    """Row-level visibility applied to a quotation listing.

    ``participant_id`` matches the header's requester, approver or creator;
    ``linked_header_ids`` widens that match to quotations reached via an RFQ.
    ``header_ids`` restricts the listing outright.
    """
    participant_id: Optional[str] = None
    linked_header_ids: List[int] = []
    header_ids: Optional[List[int]] = None


class AbstractRepository(ABC):
    """Abstract interface for data persistence operations.

    Implementations flush but never commit; the services own the transaction.
    """

    # Generic
    @abstractmethod
    async def save(self, entity):
        """Flushes pending changes of an already persisted row and refreshes it."""
        raise NotImplementedError

    @abstractmethod
    async def delete(self, entity) -> None:
        raise NotImplementedError

    # Document numbers
    @abstractmethod
    async def list_document_numbers(self, doc_type: DocumentType, suffix: str) -> List[str]:
        """Returns every existing number of ``doc_type`` ending with ``suffix``."""
        raise NotImplementedError

    @abstractmethod
    async def document_number_exists(self, doc_type: DocumentType, number: str) -> bool:
        raise NotImplementedError

    # RFQs
    @abstractmethod
    async def add_rfq(self, rfq: RFQTable) -> RFQTable:
        """Inserts an RFQ. Raises DuplicateKeyError when its number is taken."""
        raise NotImplementedError

    @abstractmethod
    async def get_rfq(self, rfq_id: int, for_update: bool = False) -> Optional[RFQTable]:
        """``for_update`` takes a row lock for the rest of the transaction."""
        raise NotImplementedError

    @abstractmethod
    async def get_rfq_by_quotation_id(self, quotation_id: int) -> Optional[RFQTable]:
        raise NotImplementedError

    @abstractmethod
    async def list_rfqs(
        self,
        requester_id: Optional[str] = None,
        approver_id: Optional[str] = None,
        creator_id: Optional[str] = None,
        status: Optional[RFQStatus] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[RFQTable], int]:
        """Lists RFQs matching ANY of the given actor ids, newest first, with the total count."""
        raise NotImplementedError

    @abstractmethod
    async def count_rfqs(self, approver_id: str, status: RFQStatus) -> int:
        raise NotImplementedError

    @abstractmethod
    async def list_rfqs_for_creator(self, creator_id: str, status: RFQStatus) -> List[RFQTable]:
        """RFQs assigned to a quotation creator, most recently approved first."""
        raise NotImplementedError

    @abstractmethod
    async def list_linked_quotation_ids(self, requester_id: Optional[str] = None, approver_id: Optional[str] = None) -> List[int]:
        """Quotation ids of converted RFQs where the user is requester or approver."""
        raise NotImplementedError

    # RFQ items
    @abstractmethod
    async def add_rfq_item(self, item: RFQItemTable) -> RFQItemTable:
        raise NotImplementedError

    @abstractmethod
    async def get_rfq_item(self, item_id: int) -> Optional[RFQItemTable]:
        raise NotImplementedError

    @abstractmethod
    async def list_rfq_items(self, rfq_id: int) -> List[RFQItemTable]:
        """Items of an RFQ ordered by item number."""
        raise NotImplementedError

    # Quotation headers
    @abstractmethod
    async def add_quotation_header(self, header: QuotationHeaderTable) -> QuotationHeaderTable:
        """Inserts a header. Raises DuplicateKeyError when its number is taken."""
        raise NotImplementedError

    @abstractmethod
    async def get_quotation_header(self, header_id: int) -> Optional[QuotationHeaderTable]:
        raise NotImplementedError

    @abstractmethod
    async def get_quotation_header_by_number(self, quotation_number: str) -> Optional[QuotationHeaderTable]:
        raise NotImplementedError

    @abstractmethod
    async def list_quotation_headers(
        self,
        filters: QuotationListFilters,
        scope: Optional[QuotationScope] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[QuotationHeaderTable], int]:
        """Filtered headers, newest first, with the total count."""
        raise NotImplementedError

    # Offers
    @abstractmethod
    async def add_offer(self, offer: QuotationOfferTable) -> QuotationOfferTable:
        """Inserts an offer. Raises DuplicateKeyError on a taken number or slot/revision."""
        raise NotImplementedError

    @abstractmethod
    async def get_offer(self, offer_id: int) -> Optional[QuotationOfferTable]:
        raise NotImplementedError

    @abstractmethod
    async def list_offers(self, header_id: int) -> List[QuotationOfferTable]:
        """Offers of a header ordered by slot, then revision."""
        raise NotImplementedError

    @abstractmethod
    async def offer_number_exists(self, offer_number: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def list_revisions_of(self, offer_id: int) -> List[QuotationOfferTable]:
        """Offers whose parent is ``offer_id``."""
        raise NotImplementedError

    @abstractmethod
    async def list_referenced_images(self, image_ids: Iterable[str]) -> Set[str]:
        """The subset of ``image_ids`` still referenced by any stored offer."""
        raise NotImplementedError

    # Offer items
    @abstractmethod
    async def add_offer_item(self, item: OfferItemTable) -> OfferItemTable:
        raise NotImplementedError

    @abstractmethod
    async def get_offer_item(self, item_id: int) -> Optional[OfferItemTable]:
        raise NotImplementedError

    @abstractmethod
    async def list_offer_items(self, offer_id: int) -> List[OfferItemTable]:
        """Items of an offer ordered by item number."""
        raise NotImplementedError


class CapabilityChecker(ABC):
    @abstractmethod
    async def has_capability(self, user_id: str, capability: str) -> bool:
        raise NotImplementedError


class UserDirectory(ABC):
    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[PlatformUser]:
        raise NotImplementedError


class Notifier(ABC):
    @abstractmethod
    async def notify(self, user_id: str, title: str, description: str, link_path: str) -> None:
        raise NotImplementedError


class AttachmentStore(ABC):
    @abstractmethod
    async def delete_images(self, image_ids: List[str]) -> int:
        """Deletes stored notes images, returning how many were removed."""
        raise NotImplementedError
