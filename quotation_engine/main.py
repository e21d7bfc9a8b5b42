from fastapi import FastAPI, Depends, HTTPException, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic.alias_generators import to_camel
from typing import Dict, Any, Optional, List
from datetime import datetime
from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession # For DB session type hint

from .errors import QuotationEngineError, ValidationError
from .models import (
    CreateRFQ, RFQDecision, RFQItemInput, RFQItemUpdate, ConvertRFQ,
    CreateQuotation, HeaderUpdate, QuotationStatusUpdate, ProgressEntry, QuotationListFilters,
    OfferInput, OfferUpdate, OfferItemInput, OfferItemUpdate,
)
from .adapters.db_repository import SQLModelRepository
from .adapters.platform_client import PlatformClient
from .service.ports import AbstractRepository
from .service.unit_of_work import UnitOfWork
from .service.access import AccessFilter
from .service.offers import OfferService
from .service.quotations import QuotationService
from .service.rfq_service import RFQService
from .service.conversion import ConversionBridge
from shared.models_db import RFQStatus, QuotationStatusType
from shared.settings import settings
from shared.logging import get_logger
from shared.db import create_db_and_tables, close_db_connection, get_async_session

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Quotation Engine starting up...")
    await create_db_and_tables()
    yield
    logger.info("Quotation Engine shutting down...")
    await close_db_connection()

app = FastAPI(
    title=settings.APP_NAME,
    version="v1",
    lifespan=lifespan
)


@app.exception_handler(QuotationEngineError)
async def handle_engine_error(request: Request, exc: QuotationEngineError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} failed with {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.code})


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Schema failures answer the same way as ValidationError.
    messages = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        messages.append(f"{'.'.join(loc)}: {error.get('msg')}" if loc else str(error.get("msg")))
    logger.warning(f"{request.method} {request.url.path} rejected: {'; '.join(messages)}")
    return JSONResponse(
        status_code=ValidationError.status_code,
        content={"detail": "; ".join(messages), "error": ValidationError.code},
    )


# --- Response shaping: snake_case columns -> camelCase API fields ---
_FIELD_NAMES = {
    "exclude_ppn": "excludePPN",
    "drawing_specification_id": "drawingSpecification",
}

def to_api(row) -> Dict[str, Any]:
    data = jsonable_encoder(row)
    out = {_FIELD_NAMES.get(key, to_camel(key)): value for key, value in data.items()}
    if "contactPersonName" in out:
        out["contactPerson"] = {"name": out.pop("contactPersonName"), "gender": out.pop("contactPersonGender", None)}
    if "statusType" in out:
        out["status"] = {"type": out.pop("statusType"), "reason": out.pop("statusReason", None)}
    return out

def rfq_out(rfq, items: Optional[List] = None) -> Dict[str, Any]:
    out = to_api(rfq)
    out["isApproved"] = rfq.is_approved
    if items is not None:
        out["items"] = [to_api(item) for item in items]
    return out

def offer_out(offer, items: Optional[List] = None) -> Dict[str, Any]:
    out = to_api(offer)
    out["acceptanceStatus"] = offer.acceptance_status
    if items is not None:
        out["items"] = [to_api(item) for item in items]
    return out

def quotation_out(view: Dict[str, Any]) -> Dict[str, Any]:
    header = to_api(view["header"])
    header["followUpStatus"] = view["followUpStatus"].model_dump()
    return {
        "header": header,
        "offers": [
            {
                "slot": group["slot"],
                "original": offer_out(group["original"]["offer"], group["original"]["items"]),
                "revisions": [offer_out(rev["offer"], rev["items"]) for rev in group["revisions"]],
            }
            for group in view["offers"]
        ],
    }


# --- Dependencies ---
async def get_actor_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    # The gateway authenticates the caller and forwards the user id.
    if not x_user_id:
        logger.warning("Missing X-User-Id header")
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id

def get_db_repository(session: AsyncSession = Depends(get_async_session)) -> AbstractRepository:
    return SQLModelRepository(session)

def get_unit_of_work(session: AsyncSession = Depends(get_async_session)) -> UnitOfWork:
    return UnitOfWork(session)

def get_platform_client() -> PlatformClient:
    return PlatformClient()

def get_access_filter(
    platform: PlatformClient = Depends(get_platform_client),
    db_repo: AbstractRepository = Depends(get_db_repository),
) -> AccessFilter:
    return AccessFilter(capabilities=platform, repository=db_repo)

def get_offer_service(
    db_repo: AbstractRepository = Depends(get_db_repository),
    uow: UnitOfWork = Depends(get_unit_of_work),
    access: AccessFilter = Depends(get_access_filter),
    platform: PlatformClient = Depends(get_platform_client),
) -> OfferService:
    return OfferService(repository=db_repo, uow=uow, access=access, attachments=platform)

def get_quotation_service(
    db_repo: AbstractRepository = Depends(get_db_repository),
    uow: UnitOfWork = Depends(get_unit_of_work),
    offers: OfferService = Depends(get_offer_service),
    access: AccessFilter = Depends(get_access_filter),
    platform: PlatformClient = Depends(get_platform_client),
) -> QuotationService:
    return QuotationService(repository=db_repo, uow=uow, offers=offers, access=access, users=platform)

def get_rfq_service(
    db_repo: AbstractRepository = Depends(get_db_repository),
    uow: UnitOfWork = Depends(get_unit_of_work),
    access: AccessFilter = Depends(get_access_filter),
    platform: PlatformClient = Depends(get_platform_client),
) -> RFQService:
    return RFQService(repository=db_repo, uow=uow, access=access, notifier=platform)

def get_conversion_bridge(
    db_repo: AbstractRepository = Depends(get_db_repository),
    uow: UnitOfWork = Depends(get_unit_of_work),
    quotations: QuotationService = Depends(get_quotation_service),
    platform: PlatformClient = Depends(get_platform_client),
) -> ConversionBridge:
    return ConversionBridge(repository=db_repo, uow=uow, quotations=quotations, users=platform, notifier=platform)


# --- RFQ routes ---
@app.post("/rfqs", status_code=201)
async def create_rfq(payload: CreateRFQ, actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    logger.info(f"Received RFQ create request from {actor_id}. Items: {len(payload.items)}")
    rfq, items = await rfq_service.create(payload, actor_id)
    return {"message": "RFQ created successfully", "rfq": rfq_out(rfq, items)}

@app.get("/rfqs")
async def list_rfqs(
    status: Optional[RFQStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor_id: str = Depends(get_actor_id),
    rfq_service: RFQService = Depends(get_rfq_service),
):
    result = await rfq_service.list(actor_id, status=status, page=page, limit=limit)
    return {
        "rfqs": [rfq_out(rfq) for rfq in result["rfqs"]],
        "pagination": result["pagination"].model_dump(),
        "userRole": result["userRole"],
    }

@app.get("/rfqs/pending-count")
async def pending_rfq_count(actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    return {"count": await rfq_service.pending_count(actor_id)}

@app.get("/rfqs/approved-for-quotation")
async def approved_rfqs(actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    return {"rfqs": [rfq_out(rfq) for rfq in await rfq_service.approved_for_quotation(actor_id)]}

@app.put("/rfqs/items/{item_id}")
async def update_rfq_item(item_id: int, payload: RFQItemUpdate, actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    item = await rfq_service.update_item(item_id, actor_id, payload)
    return {"message": "RFQ item updated successfully", "item": to_api(item)}

@app.delete("/rfqs/items/{item_id}")
async def delete_rfq_item(item_id: int, actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    await rfq_service.delete_item(item_id, actor_id)
    return {"message": "RFQ item deleted successfully"}

@app.get("/rfqs/{rfq_id}")
async def get_rfq(rfq_id: int, actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    rfq, items = await rfq_service.get(rfq_id, actor_id)
    return {"rfq": rfq_out(rfq, items)}

@app.patch("/rfqs/{rfq_id}/approve")
async def approve_rfq(rfq_id: int, payload: RFQDecision = RFQDecision(), actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    rfq = await rfq_service.approve(rfq_id, actor_id, payload.notes)
    return {"message": "RFQ approved successfully", "rfq": rfq_out(rfq)}

@app.patch("/rfqs/{rfq_id}/reject")
async def reject_rfq(rfq_id: int, payload: RFQDecision = RFQDecision(), actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    rfq = await rfq_service.reject(rfq_id, actor_id, payload.notes)
    return {"message": "RFQ rejected successfully", "rfq": rfq_out(rfq)}

@app.post("/rfqs/{rfq_id}/items", status_code=201)
async def add_rfq_item(rfq_id: int, payload: RFQItemInput, actor_id: str = Depends(get_actor_id), rfq_service: RFQService = Depends(get_rfq_service)):
    item = await rfq_service.add_item(rfq_id, actor_id, payload)
    return {"message": "RFQ item created successfully", "item": to_api(item)}

@app.post("/rfqs/{rfq_id}/convert", status_code=201)
async def convert_rfq(
    rfq_id: int,
    payload: ConvertRFQ = ConvertRFQ(),
    actor_id: str = Depends(get_actor_id),
    bridge: ConversionBridge = Depends(get_conversion_bridge),
):
    result = await bridge.convert(rfq_id, actor_id, payload.header, payload.offer)
    return {
        "message": "Quotation created from RFQ successfully",
        "rfq": rfq_out(result["rfq"]),
        "header": to_api(result["header"]),
        "offer": offer_out(result["offer"]),
    }


# --- Quotation routes ---
@app.post("/quotations", status_code=201)
async def create_quotation(payload: CreateQuotation, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    header, offer = await quotations.create_quotation(payload.header, payload.offer, actor_id)
    return {"message": "Quotation created successfully", "header": to_api(header), "offer": offer_out(offer)}

@app.get("/quotations/generate/number")
async def generate_quotation_number(actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    number = await quotations.preview_number(actor_id)
    return {"message": "Quotation number generated successfully", "quotationNumber": number}

@app.get("/quotations")
async def list_quotations(
    mode: str = "all",
    customer: Optional[str] = None,
    marketing: Optional[str] = None,
    status_type: Optional[QuotationStatusType] = Query(None, alias="statusType"),
    created_from: Optional[datetime] = Query(None, alias="createdFrom"),
    created_to: Optional[datetime] = Query(None, alias="createdTo"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor_id: str = Depends(get_actor_id),
    quotations: QuotationService = Depends(get_quotation_service),
):
    filters = QuotationListFilters(
        customer=customer, marketing=marketing, statusType=status_type,
        createdFrom=created_from, createdTo=created_to,
    )
    result = await quotations.list_quotations(actor_id, filters, mode=mode, page=page, limit=limit)
    return {
        "quotations": [quotation_out(view) for view in result["quotations"]],
        "pagination": result["pagination"].model_dump(),
    }

@app.put("/quotations/offers/{offer_id}")
async def update_offer(offer_id: int, payload: OfferUpdate, actor_id: str = Depends(get_actor_id), offers: OfferService = Depends(get_offer_service)):
    offer = await offers.update_offer(offer_id, payload, actor_id)
    return {"message": "Offer updated successfully", "offer": offer_out(offer)}

@app.delete("/quotations/offers/{offer_id}")
async def delete_offer(offer_id: int, actor_id: str = Depends(get_actor_id), offers: OfferService = Depends(get_offer_service)):
    cleanup = await offers.delete_offer(offer_id, actor_id)
    return {"message": "Offer deleted successfully", "imageCleanup": cleanup.model_dump()}

@app.post("/quotations/offers/{offer_id}/revisions", status_code=201)
async def create_revision(offer_id: int, payload: OfferInput, actor_id: str = Depends(get_actor_id), offers: OfferService = Depends(get_offer_service)):
    offer = await offers.create_revision(offer_id, payload, actor_id)
    return {"message": "Offer revision created successfully", "offer": offer_out(offer)}

@app.post("/quotations/offers/{offer_id}/items", status_code=201)
async def add_offer_item(offer_id: int, payload: OfferItemInput, actor_id: str = Depends(get_actor_id), offers: OfferService = Depends(get_offer_service)):
    item = await offers.add_item(offer_id, payload, actor_id)
    return {"message": "Offer item created successfully", "item": to_api(item)}

@app.put("/quotations/offer-items/{item_id}")
async def update_offer_item(item_id: int, payload: OfferItemUpdate, actor_id: str = Depends(get_actor_id), offers: OfferService = Depends(get_offer_service)):
    item = await offers.update_item(item_id, payload, actor_id)
    return {"message": "Offer item updated successfully", "item": to_api(item)}

@app.delete("/quotations/offer-items/{item_id}")
async def delete_offer_item(item_id: int, actor_id: str = Depends(get_actor_id), offers: OfferService = Depends(get_offer_service)):
    offer = await offers.delete_item(item_id, actor_id)
    return {"message": "Offer item deleted successfully", "offer": offer_out(offer)}

@app.patch("/quotations/offer-items/{item_id}/accept")
async def toggle_offer_item_acceptance(item_id: int, actor_id: str = Depends(get_actor_id), offers: OfferService = Depends(get_offer_service)):
    item = await offers.toggle_acceptance(item_id, actor_id)
    return {"message": "Offer item acceptance status updated successfully", "item": to_api(item)}

@app.get("/quotations/{header_id}")
async def get_quotation(header_id: int, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    return quotation_out(await quotations.get_quotation(header_id, actor_id))

@app.put("/quotations/{header_id}")
async def update_quotation_header(header_id: int, payload: HeaderUpdate, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    header = await quotations.update_header(header_id, payload, actor_id)
    return {"message": "Quotation updated successfully", "header": to_api(header)}

@app.delete("/quotations/{header_id}")
async def delete_quotation(header_id: int, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    cleanup = await quotations.delete_quotation(header_id, actor_id)
    return {"message": "Quotation deleted successfully", "imageCleanup": cleanup.model_dump()}

@app.patch("/quotations/{header_id}/status")
async def set_quotation_status(header_id: int, payload: QuotationStatusUpdate, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    header = await quotations.set_status(header_id, payload, actor_id)
    return {"message": "Quotation status updated successfully", "header": to_api(header)}

@app.patch("/quotations/{header_id}/follow-up")
async def touch_follow_up(header_id: int, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    header = await quotations.touch_follow_up(header_id, actor_id)
    return {
        "message": "Follow-up date updated successfully",
        "header": to_api(header),
        "followUpStatus": quotations.follow_up_status(header.last_follow_up_date).model_dump(),
    }

@app.post("/quotations/{header_id}/progress", status_code=201)
async def add_progress(header_id: int, payload: ProgressEntry, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    header = await quotations.add_progress(header_id, payload.text, actor_id)
    return {"message": "Progress added successfully", "progress": header.progress}

@app.post("/quotations/{header_id}/offers", status_code=201)
async def add_offer(header_id: int, payload: OfferInput, actor_id: str = Depends(get_actor_id), quotations: QuotationService = Depends(get_quotation_service)):
    offer = await quotations.add_offer(header_id, payload, actor_id)
    return {"message": "Offer created successfully", "offer": offer_out(offer)}
