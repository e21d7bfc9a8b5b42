import pytest
import pytest_asyncio
from typing import AsyncGenerator, Dict, Set
from unittest.mock import AsyncMock

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

import shared.models_db # noqa: F401 - registers the tables on SQLModel.metadata
from quotation_engine.adapters.db_repository import SQLModelRepository
from quotation_engine.models import (
    ContactPerson, CreateRFQ, OfferInput, OfferItemInput, PlatformUser, QuotationHeaderInput, RFQItemInput,
)
from quotation_engine.service.access import AccessFilter
from quotation_engine.service.conversion import ConversionBridge
from quotation_engine.service.line_items import LineItemStore
from quotation_engine.service.offers import OfferService
from quotation_engine.service.ports import AttachmentStore, CapabilityChecker, Notifier, UserDirectory
from quotation_engine.service.quotations import QuotationService
from quotation_engine.service.rfq_service import RFQService
from quotation_engine.service.sequence import SequenceGenerator
from quotation_engine.service.unit_of_work import UnitOfWork
from quotation_engine.tests.actors import REQUESTER, APPROVER, CREATOR, ADMIN, VIEWER
from shared.models_db import Gender


# In-memory SQLite stands in for Postgres. The listeners hand transaction
# control to SQLAlchemy so SAVEPOINTs (begin_nested) work under pysqlite.
@pytest_asyncio.fixture(scope="function")
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    db_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(db_engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(db_engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with db_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSession(engine, expire_on_commit=False, autoflush=False) as session:
        yield session


@pytest.fixture
def repository(db_session: AsyncSession) -> SQLModelRepository:
    return SQLModelRepository(db_session)


@pytest.fixture
def uow(db_session: AsyncSession) -> UnitOfWork:
    return UnitOfWork(db_session)


# Collaborators
@pytest.fixture
def grants() -> Dict[str, Set[str]]:
    return {
        REQUESTER: {"quotation_requester"},
        APPROVER: {"approve_rfq"},
        CREATOR: {"quotation_create"},
        ADMIN: {"admin"},
        VIEWER: {"all_quotation_viewer"},
    }


@pytest.fixture
def capabilities(grants) -> AsyncMock:
    checker = AsyncMock(spec=CapabilityChecker)
    checker.has_capability.side_effect = lambda user_id, capability: capability in grants.get(user_id, set())
    return checker


@pytest.fixture
def users() -> AsyncMock:
    directory = AsyncMock(spec=UserDirectory)
    directory.get_user.return_value = PlatformUser(id=REQUESTER, fullName="Budi Santoso", email="budi@example.com")
    return directory


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock(spec=Notifier)


@pytest.fixture
def attachments() -> AsyncMock:
    store = AsyncMock(spec=AttachmentStore)
    store.delete_images.side_effect = lambda image_ids: len(image_ids)
    return store


# Services wired the way main.py wires them
@pytest.fixture
def access(capabilities, repository) -> AccessFilter:
    return AccessFilter(capabilities=capabilities, repository=repository)


@pytest.fixture
def sequence(repository) -> SequenceGenerator:
    return SequenceGenerator(repository, org_code="STM", max_attempts=5, base_delay=0)


@pytest.fixture
def line_items(repository) -> LineItemStore:
    return LineItemStore(repository)


@pytest.fixture
def offer_service(repository, uow, line_items, access, attachments) -> OfferService:
    return OfferService(repository=repository, uow=uow, line_items=line_items, access=access, attachments=attachments)


@pytest.fixture
def quotation_service(repository, uow, offer_service, access, users, sequence) -> QuotationService:
    return QuotationService(repository=repository, uow=uow, offers=offer_service, access=access, users=users, sequence=sequence)


@pytest.fixture
def rfq_service(repository, uow, access, notifier, sequence, line_items) -> RFQService:
    return RFQService(repository=repository, uow=uow, access=access, notifier=notifier, sequence=sequence, line_items=line_items)


@pytest.fixture
def conversion(repository, uow, quotation_service, users, notifier) -> ConversionBridge:
    return ConversionBridge(repository=repository, uow=uow, quotations=quotation_service, users=users, notifier=notifier)


# Payload factories
@pytest.fixture
def make_rfq_payload():
    def _make(**overrides) -> CreateRFQ:
        data = dict(
            approverId=APPROVER,
            quotationCreatorId=CREATOR,
            customerName="  pt maju jaya ",
            contactPerson=ContactPerson(name="budi SANTOSO", gender=Gender.MALE),
            description="Two dump trucks",
            confidenceRate=70,
            deliveryLocation="Surabaya",
            competitor="PT Lain",
            canMake=True,
            projectOngoing=False,
            items=[
                RFQItemInput(karoseri="a", chassis="c1", price=100, priceNet=90),
                RFQItemInput(karoseri="b", chassis="c2", price=200, priceNet=180),
            ],
        )
        data.update(overrides)
        return CreateRFQ(**data)
    return _make


@pytest.fixture
def make_offer_item():
    def _make(**overrides) -> OfferItemInput:
        data = dict(karoseri="Dump", chassis="Hino 500", price=100.0, netto=90.0, discountValue=10)
        data.update(overrides)
        return OfferItemInput(**data)
    return _make


@pytest.fixture
def make_quotation(quotation_service, make_offer_item):
    """Creates a quotation owned by CREATOR, with one offer of the given prices."""
    async def _make(prices=((100.0, 90.0), (200.0, 180.0)), images=(), customer="PT Maju Jaya"):
        header, offer = await quotation_service.create_with_first_offer(
            QuotationHeaderInput(
                requesterId=REQUESTER,
                approverId=APPROVER,
                customerName=customer,
                contactPerson=ContactPerson(name="Budi Santoso"),
            ),
            OfferInput(
                notesImages=list(images),
                offerItems=[make_offer_item(price=price, netto=netto) for price, netto in prices],
            ),
            CREATOR,
        )
        return header, offer
    return _make
