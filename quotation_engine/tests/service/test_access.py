import pytest
from unittest.mock import AsyncMock

from quotation_engine.service.access import AccessFilter, Capability
from quotation_engine.service.ports import AbstractRepository, CapabilityChecker, QuotationScope
from quotation_engine.tests.actors import ADMIN, APPROVER, CREATOR, OUTSIDER, REQUESTER, VIEWER
from shared.models_db import Gender, QuotationHeaderTable, RFQTable


@pytest.fixture
def mock_db_repository() -> AsyncMock:
    repo = AsyncMock(spec=AbstractRepository)
    repo.get_rfq_by_quotation_id.return_value = None
    repo.list_linked_quotation_ids.return_value = []
    return repo


@pytest.fixture
def access_filter(capabilities: CapabilityChecker, mock_db_repository: AsyncMock) -> AccessFilter:
    return AccessFilter(capabilities=capabilities, repository=mock_db_repository)


def _header(**overrides) -> QuotationHeaderTable:
    data = dict(
        id=7, quotation_number="1/QUO/STM/I/2025", requester_id="someone", approver_id="someone",
        creator_id=CREATOR, marketing_name="Budi", customer_name="PT A",
        contact_person_name="Ani", contact_person_gender=Gender.FEMALE,
    )
    data.update(overrides)
    return QuotationHeaderTable(**data)


def _rfq(**overrides) -> RFQTable:
    data = dict(
        id=3, rfq_number="1/RFQ/STM/I/2025", requester_id=REQUESTER, approver_id=APPROVER,
        quotation_creator_id=CREATOR, customer_name="PT A", contact_person_name="Ani",
        contact_person_gender=Gender.FEMALE, confidence_rate=50, delivery_location="Jakarta",
        competitor="-", can_make=True, project_ongoing=False,
    )
    data.update(overrides)
    return RFQTable(**data)


@pytest.mark.asyncio
async def test_capability_lookups(access_filter: AccessFilter, capabilities):
    assert await access_filter.has(APPROVER, Capability.APPROVE_RFQ) is True
    assert await access_filter.has(REQUESTER, Capability.APPROVE_RFQ) is False
    capabilities.has_capability.assert_any_await(APPROVER, "approve_rfq")

    assert await access_filter.can_view_all_quotations(VIEWER) is True
    assert await access_filter.can_view_all_quotations(ADMIN) is True
    assert await access_filter.can_view_all_quotations(CREATOR) is False
    assert await access_filter.can_create_quotation(CREATOR) is True
    assert await access_filter.can_create_quotation(ADMIN) is True
    assert await access_filter.can_create_quotation(REQUESTER) is False


@pytest.mark.asyncio
async def test_quotation_view_and_mutate(access_filter: AccessFilter, mock_db_repository: AsyncMock):
    header = _header()

    assert await access_filter.can_view_quotation(CREATOR, header) is True
    assert await access_filter.can_view_quotation(VIEWER, header) is True
    assert await access_filter.can_view_quotation(OUTSIDER, header) is False

    # Viewing everything does not grant edits
    assert await access_filter.can_mutate_quotation(VIEWER, header) is False
    assert await access_filter.can_mutate_quotation(ADMIN, header) is True
    assert await access_filter.can_mutate_quotation(CREATOR, header) is True


@pytest.mark.asyncio
async def test_linked_rfq_participants(access_filter: AccessFilter, mock_db_repository: AsyncMock):
    header = _header()
    assert await access_filter.can_view_quotation(REQUESTER, header) is False

    mock_db_repository.get_rfq_by_quotation_id.return_value = _rfq(quotation_id=header.id)

    assert await access_filter.can_view_quotation(REQUESTER, header) is True
    assert await access_filter.can_mutate_quotation(APPROVER, header) is True
    mock_db_repository.get_rfq_by_quotation_id.assert_awaited_with(7)


@pytest.mark.asyncio
async def test_quotation_scope(access_filter: AccessFilter, mock_db_repository: AsyncMock):
    assert await access_filter.quotation_scope(ADMIN) is None
    assert await access_filter.quotation_scope(VIEWER) is None

    mock_db_repository.list_linked_quotation_ids.return_value = [4, 9]
    scope = await access_filter.quotation_scope(REQUESTER)

    assert scope == QuotationScope(participant_id=REQUESTER, linked_header_ids=[4, 9])
    mock_db_repository.list_linked_quotation_ids.assert_awaited_once_with(requester_id=REQUESTER, approver_id=REQUESTER)


@pytest.mark.asyncio
async def test_rfq_visibility(access_filter: AccessFilter, grants):
    rfq = _rfq()

    for actor in (REQUESTER, APPROVER, CREATOR, ADMIN):
        assert await access_filter.can_view_rfq(actor, rfq) is True
    assert await access_filter.can_view_rfq(OUTSIDER, rfq) is False

    # The designated approver needs the capability too
    grants[APPROVER] = set()
    assert await access_filter.can_view_rfq(APPROVER, rfq) is False


@pytest.mark.asyncio
async def test_rfq_view_role(access_filter: AccessFilter, grants):
    assert await access_filter.rfq_view_role(APPROVER) == "approver"
    assert await access_filter.rfq_view_role(CREATOR) == "creator"
    assert await access_filter.rfq_view_role(REQUESTER) == "requester"

    grants[CREATOR] = {"quotation_create", "approve_rfq"}
    assert await access_filter.rfq_view_role(CREATOR) == "approver"
