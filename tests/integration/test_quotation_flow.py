import re
import pytest
import httpx

from tests.integration.fakes import APPROVER, CREATOR, REQUESTER, FakePlatform


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


RFQ_PAYLOAD = {
    "approverId": APPROVER,
    "quotationCreatorId": CREATOR,
    "customerName": "  pt maju jaya ",
    "contactPerson": {"name": "budi SANTOSO", "gender": "Male"},
    "description": "Two dump trucks for the quarry",
    "confidenceRate": 70,
    "deliveryLocation": "Surabaya",
    "competitor": "PT Lain",
    "canMake": True,
    "projectOngoing": False,
    "priority": "high",
    "items": [
        {"karoseri": "dump", "chassis": "hino 500", "price": 100, "priceNet": 90},
        {"karoseri": "wing box", "chassis": "fuso", "price": 200, "priceNet": 180},
    ],
}


@pytest.mark.asyncio
async def test_rfq_to_quotation_lifecycle(http_client: httpx.AsyncClient, platform: FakePlatform):
    """
    Walks one deal through the service:
    1. Sales submits an RFQ; the approver is notified.
    2. The approver approves it (twice is refused).
    3. The estimator converts it into a quotation with its first offer.
    4. A revision is branched, the deal is won on it, and the quotation deleted.
    """
    # 1. Submit
    response = await http_client.post("/rfqs", json=RFQ_PAYLOAD, headers=as_user(REQUESTER))
    assert response.status_code == 201, response.text
    rfq = response.json()["rfq"]
    assert re.fullmatch(r"1/RFQ/STM/[IVX]+/\d{4}", rfq["rfqNumber"])
    assert rfq["customerName"] == "PT MAJU JAYA"
    assert rfq["contactPerson"]["name"] == "Budi Santoso"
    assert [(i["itemNumber"], i["karoseri"]) for i in rfq["items"]] == [(1, "DUMP"), (2, "WING BOX")]
    assert platform.notifications[-1] == {"userId": APPROVER, "title": "New RFQ Request", "link": "/quotations"}
    rfq_id = rfq["id"]

    response = await http_client.get("/rfqs/pending-count", headers=as_user(APPROVER))
    assert response.json() == {"count": 1}

    # 2. Approve
    response = await http_client.patch(f"/rfqs/{rfq_id}/approve", json={"notes": "ok"}, headers=as_user(REQUESTER))
    assert response.status_code == 403
    response = await http_client.patch(f"/rfqs/{rfq_id}/approve", json={"notes": "Go"}, headers=as_user(APPROVER))
    assert response.status_code == 200
    assert response.json()["rfq"]["status"] == "approved"
    assert response.json()["rfq"]["isApproved"] is True
    response = await http_client.patch(f"/rfqs/{rfq_id}/reject", headers=as_user(APPROVER))
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_state"

    response = await http_client.get("/rfqs/approved-for-quotation", headers=as_user(CREATOR))
    assert [r["id"] for r in response.json()["rfqs"]] == [rfq_id]

    # 3. Convert
    response = await http_client.post(
        f"/rfqs/{rfq_id}/convert",
        json={"offer": {"notes": "Franco Surabaya", "notesImages": ["img-1"]}},
        headers=as_user(CREATOR),
    )
    assert response.status_code == 201, response.text
    body = response.json()
    header_id = body["header"]["id"]
    quotation_number = body["header"]["quotationNumber"]
    assert body["rfq"]["status"] == "quotation_created"
    assert body["rfq"]["quotationId"] == header_id
    assert body["header"]["marketingName"] == "Sales"
    assert body["offer"]["offerNumber"] == f"{quotation_number}-1"
    assert (body["offer"]["totalPrice"], body["offer"]["totalNetto"], body["offer"]["totalDiscount"]) == (300, 270, 30)
    original_id = body["offer"]["id"]

    # The requester reaches the quotation through their RFQ
    response = await http_client.get("/quotations", params={"mode": "my_quotations"}, headers=as_user(REQUESTER))
    assert [q["header"]["id"] for q in response.json()["quotations"]] == [header_id]

    # 4. Revise, win, delete
    response = await http_client.post(
        f"/quotations/offers/{original_id}/revisions", json={"notesImages": ["img-2"]}, headers=as_user(CREATOR),
    )
    assert response.status_code == 201, response.text
    revision = response.json()["offer"]
    assert revision["offerNumber"] == f"{quotation_number}-1-Rev1"
    assert revision["notesImages"] == ["img-1", "img-2"]

    response = await http_client.get(f"/quotations/{header_id}", headers=as_user(CREATOR))
    view = response.json()
    assert view["header"]["status"] == {"type": "open", "reason": None}
    assert view["header"]["followUpStatus"]["status"] == "good"
    group = view["offers"][0]
    assert group["original"]["id"] == original_id
    assert [r["id"] for r in group["revisions"]] == [revision["id"]]
    revision_item_ids = [item["id"] for item in group["revisions"][0]["items"]]

    response = await http_client.patch(
        f"/quotations/{header_id}/status",
        json={"type": "win", "selectedOfferId": revision["id"], "selectedOfferItemIds": revision_item_ids[:1]},
        headers=as_user(CREATOR),
    )
    assert response.status_code == 200
    assert response.json()["header"]["status"]["type"] == "win"

    response = await http_client.get(f"/quotations/{header_id}", headers=as_user(CREATOR))
    won_revision = response.json()["offers"][0]["revisions"][0]
    assert won_revision["acceptanceStatus"] == "partially_accepted"
    assert [item["isAccepted"] for item in won_revision["items"]] == [True, False]

    response = await http_client.patch(f"/quotations/{header_id}/status", json={"type": "loss"}, headers=as_user(CREATOR))
    assert response.status_code == 400
    assert response.json()["detail"] == "Reason is required when status is loss"

    response = await http_client.delete(f"/quotations/offers/{original_id}", headers=as_user(CREATOR))
    assert response.status_code == 409

    response = await http_client.delete(f"/quotations/{header_id}", headers=as_user(CREATOR))
    assert response.status_code == 200
    assert response.json()["imageCleanup"] == {"deletedCount": 2, "keptCount": 0, "warning": None}
    assert sorted(platform.deleted_images) == ["img-1", "img-2"]

    response = await http_client.get(f"/quotations/{header_id}", headers=as_user(CREATOR))
    assert response.status_code == 404
    response = await http_client.get(f"/rfqs/{rfq_id}", headers=as_user(REQUESTER))
    assert response.json()["rfq"]["status"] == "quotation_created"
    assert response.json()["rfq"]["quotationId"] is None


@pytest.mark.asyncio
async def test_rfq_validation_over_http(http_client: httpx.AsyncClient):
    payload = dict(RFQ_PAYLOAD, confidenceRate=150)

    response = await http_client.post("/rfqs", json=payload, headers=as_user(REQUESTER))

    assert response.status_code == 400
    assert response.json() == {
        "detail": "Confidence rate must be an integer between 0 and 100",
        "error": "validation_error",
    }


@pytest.mark.asyncio
async def test_unknown_approver_is_rejected(http_client: httpx.AsyncClient):
    payload = dict(RFQ_PAYLOAD, approverId="nobody")

    response = await http_client.post("/rfqs", json=payload, headers=as_user(REQUESTER))

    assert response.status_code == 400
    assert response.json()["detail"] == "Selected approver does not have permission to approve RFQs"
