from enum import Enum
from typing import List, Optional

from quotation_engine.service.ports import AbstractRepository, CapabilityChecker, QuotationScope
from shared.models_db import QuotationHeaderTable, RFQTable
from shared.logging import get_logger

logger = get_logger(__name__)


class Capability(str, Enum):
    APPROVE_RFQ = "approve_rfq"
    QUOTATION_CREATE = "quotation_create"
    QUOTATION_REQUESTER = "quotation_requester"
    ALL_QUOTATION_VIEWER = "all_quotation_viewer"
    QUOTATION_ADMIN = "quotation_admin"
    ADMIN = "admin"
    MANAGER = "manager"


# Most privileged first
ADMIN_CAPABILITIES = (Capability.ADMIN, Capability.MANAGER, Capability.QUOTATION_ADMIN)
VIEW_ALL_CAPABILITIES = ADMIN_CAPABILITIES + (Capability.ALL_QUOTATION_VIEWER,)


class AccessFilter:
    """Decides what an actor may see or change, from capabilities and from
    their relationship (requester, approver, creator) to the record."""

    def __init__(self, capabilities: CapabilityChecker, repository: AbstractRepository):
        self.capabilities = capabilities
        self.repository = repository

    async def has(self, actor_id: str, capability: Capability) -> bool:
        return await self.capabilities.has_capability(actor_id, capability.value)

    async def has_any(self, actor_id: str, capabilities) -> bool:
        for capability in capabilities:
            if await self.has(actor_id, capability):
                return True
        return False

    async def can_view_all_quotations(self, actor_id: str) -> bool:
        return await self.has_any(actor_id, VIEW_ALL_CAPABILITIES)

    async def _linked_rfq(self, header: QuotationHeaderTable) -> Optional[RFQTable]:
        return await self.repository.get_rfq_by_quotation_id(header.id)

    async def _is_participant(self, actor_id: str, header: QuotationHeaderTable) -> bool:
        if actor_id in (header.creator_id, header.requester_id, header.approver_id):
            return True
        rfq = await self._linked_rfq(header)
        return bool(rfq and actor_id in (rfq.requester_id, rfq.approver_id))

    async def can_view_quotation(self, actor_id: str, header: QuotationHeaderTable) -> bool:
        if await self.can_view_all_quotations(actor_id):
            return True
        return await self._is_participant(actor_id, header)

    async def can_mutate_quotation(self, actor_id: str, header: QuotationHeaderTable) -> bool:
        # Viewing everything does not imply editing everything.
        if await self.has_any(actor_id, ADMIN_CAPABILITIES):
            return True
        return await self._is_participant(actor_id, header)

    async def quotation_scope(self, actor_id: str) -> Optional[QuotationScope]:
        """Row filter for listing the quotations an actor may see; None means all."""
        if await self.can_view_all_quotations(actor_id):
            return None
        linked: List[int] = await self.repository.list_linked_quotation_ids(requester_id=actor_id, approver_id=actor_id)
        return QuotationScope(participant_id=actor_id, linked_header_ids=linked)

    async def can_view_rfq(self, actor_id: str, rfq: RFQTable) -> bool:
        if actor_id == rfq.requester_id:
            return True
        if actor_id == rfq.approver_id and await self.has(actor_id, Capability.APPROVE_RFQ):
            return True
        if actor_id == rfq.quotation_creator_id and await self.has(actor_id, Capability.QUOTATION_CREATE):
            return True
        return await self.has_any(actor_id, ADMIN_CAPABILITIES)

    async def rfq_view_role(self, actor_id: str) -> str:
        """approver > creator > requester, used to shape RFQ listings."""
        if await self.has(actor_id, Capability.APPROVE_RFQ):
            return "approver"
        if await self.has(actor_id, Capability.QUOTATION_CREATE):
            return "creator"
        return "requester"

    async def can_create_quotation(self, actor_id: str) -> bool:
        return await self.has_any(actor_id, (Capability.QUOTATION_CREATE,) + ADMIN_CAPABILITIES)
