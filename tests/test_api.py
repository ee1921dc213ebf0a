from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest

from stocktake.api.deps import get_audit_sink, get_capabilities, get_clock
from stocktake.database import get_db
from stocktake.main import app

from conftest import EAN_FILM_A


@pytest.fixture
async def client(session_factory, clock, audit_sink, capabilities):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_audit_sink] = lambda: audit_sink
    app.dependency_overrides[get_capabilities] = lambda: capabilities

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def _start_body(seed, owner, count_type=1):
    return {"shop_id": str(seed.shop_id), "owner_user_id": str(owner), "count_type": count_type}


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "connected"


async def test_start_and_resume(client, seed):
    url = f"/api/v1/zones/{seed.zone_b1}/runs/start"

    first = await client.post(url, json=_start_body(seed, seed.alice))
    second = await client.post(url, json=_start_body(seed, seed.alice))

    assert first.status_code == 200
    assert first.json()["was_existing_run"] is False
    assert second.json()["was_existing_run"] is True
    assert second.json()["run"]["run_id"] == first.json()["run"]["run_id"]


async def test_start_conflict_maps_to_409(client, seed):
    url = f"/api/v1/zones/{seed.zone_b1}/runs/start"
    await client.post(url, json=_start_body(seed, seed.alice))

    response = await client.post(url, json=_start_body(seed, seed.bob))

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "ConflictOtherOwner"
    assert detail["metadata"]["owner_label"] == "Alice"


@pytest.mark.parametrize("zone_attr, owner_attr, count_type, status_code, code", [
    ("zone_b1", "dave_disabled", 1, 400, "OwnerInvalid"),
    ("zone_disabled", "alice", 1, 409, "LocationDisabled"),
    ("zone_b1", "bob", 2, 409, "SequentialPrerequisiteMissing"),
    ("zone_other_shop", "alice", 1, 404, "LocationNotFound"),
])
async def test_start_failures_map_to_status(client, seed, zone_attr, owner_attr, count_type, status_code, code):
    response = await client.post(
        f"/api/v1/zones/{getattr(seed, zone_attr)}/runs/start",
        json=_start_body(seed, getattr(seed, owner_attr), count_type),
    )

    assert response.status_code == status_code
    assert response.json()["detail"]["code"] == code


async def test_complete_with_invalid_lines_lists_fields(client, seed):
    await client.post(f"/api/v1/zones/{seed.zone_b1}/runs/start", json=_start_body(seed, seed.alice))

    response = await client.post(
        f"/api/v1/zones/{seed.zone_b1}/runs/complete",
        json={
            "owner_user_id": str(seed.alice),
            "count_type": 1,
            "items": [
                {"ean": EAN_FILM_A, "quantity": 1},
                {"ean": "x", "quantity": 1},
                {"ean": EAN_FILM_A, "quantity": -1},
            ],
        },
    )

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["code"] == "ValidationFailed"
    assert [e["field"] for e in detail["errors"]] == ["items[1].ean", "items[2].quantity"]


async def test_full_counting_flow(client, seed, clock, audit_sink):
    zone = seed.zone_b1
    await client.post(f"/api/v1/zones/{zone}/runs/start", json=_start_body(seed, seed.alice))
    first = await client.post(
        f"/api/v1/zones/{zone}/runs/complete",
        json={
            "owner_user_id": str(seed.alice),
            "count_type": 1,
            "items": [
                {"ean": EAN_FILM_A, "quantity": 4},
                {"ean": EAN_FILM_A, "quantity": 6, "is_manual": True},
            ],
        },
    )
    assert first.status_code == 200
    assert first.json()["item_count"] == 1
    assert Decimal(str(first.json()["total_quantity"])) == Decimal("10")

    clock.advance(timedelta(minutes=30))
    await client.post(f"/api/v1/zones/{zone}/runs/start", json=_start_body(seed, seed.bob, 2))
    second = await client.post(
        f"/api/v1/zones/{zone}/runs/complete",
        json={
            "owner_user_id": str(seed.bob),
            "count_type": 2,
            "items": [{"ean": EAN_FILM_A, "quantity": 12}],
        },
    )
    assert second.status_code == 200
    session_id = second.json()["session_id"]

    conflicts = await client.get(f"/api/v1/sessions/{session_id}/conflicts")
    assert conflicts.status_code == 200
    items = conflicts.json()["conflicts"]
    assert len(items) == 1
    assert items[0]["sku"] == "DVD-001"
    assert len(items[0]["observations"]) == 2

    resolved = await client.get(f"/api/v1/sessions/{session_id}/resolved")
    assert resolved.json()["resolved"] == []

    summary = await client.get(f"/api/v1/shops/{seed.shop_id}/inventory/summary")
    assert summary.status_code == 200
    assert summary.json()["conflict_zones"][0]["zone_code"] == "B1"

    detail = await client.get(f"/api/v1/runs/{first.json()['run_id']}")
    assert detail.status_code == 200
    assert detail.json()["lines"][0]["is_manual"] is True

    closed = await client.post(f"/api/v1/sessions/{session_id}/complete")
    assert closed.status_code == 200

    assert "inventories.complete.success" in audit_sink.actions()


async def test_restart_and_release(client, seed):
    zone = seed.zone_b1
    started = await client.post(f"/api/v1/zones/{zone}/runs/start", json=_start_body(seed, seed.alice))

    active = await client.get(
        f"/api/v1/zones/{zone}/runs/active",
        params={"owner_user_id": str(seed.alice), "count_type": 1},
    )
    assert active.status_code == 200
    assert active.json()["run_id"] == started.json()["run"]["run_id"]

    refused = await client.post(
        f"/api/v1/zones/{zone}/runs/release",
        json={"owner_user_id": str(seed.bob), "run_id": started.json()["run"]["run_id"]},
    )
    assert refused.status_code == 409
    assert refused.json()["detail"]["code"] == "NotOwner"

    restarted = await client.post(
        f"/api/v1/zones/{zone}/runs/restart",
        json={"owner_user_id": str(seed.bob), "count_type": 1},
    )
    assert restarted.status_code == 200
    assert restarted.json()["closed_runs"] == 1

    gone = await client.get(
        f"/api/v1/zones/{zone}/runs/active",
        params={"owner_user_id": str(seed.alice), "count_type": 1},
    )
    assert gone.status_code == 404


async def test_session_endpoints_not_found(client):
    missing = uuid4()

    conflicts = await client.get(f"/api/v1/sessions/{missing}/conflicts")
    complete = await client.post(f"/api/v1/sessions/{missing}/complete")

    assert conflicts.status_code == 404
    assert complete.status_code == 404
    assert conflicts.json()["detail"]["code"] == "SessionNotFound"


async def test_reset_endpoint(client, seed):
    await client.post(f"/api/v1/zones/{seed.zone_b1}/runs/start", json=_start_body(seed, seed.alice))

    response = await client.post(
        f"/api/v1/shops/{seed.shop_id}/inventory/reset", json={"actor": "Carol"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["shop_name"] == "Boutique Centre"
    assert body["runs"] == 1
    assert body["sessions"] == 1


async def _complete(client, seed, zone, owner, count_type, items):
    await client.post(f"/api/v1/zones/{zone}/runs/start", json=_start_body(seed, owner, count_type))
    response = await client.post(
        f"/api/v1/zones/{zone}/runs/complete",
        json={"owner_user_id": str(owner), "count_type": count_type, "items": items},
    )
    assert response.status_code == 200, response.text
    return response


async def test_complete_rejects_unstorable_quantity(client, seed):
    await client.post(f"/api/v1/zones/{seed.zone_b1}/runs/start", json=_start_body(seed, seed.alice))

    response = await client.post(
        f"/api/v1/zones/{seed.zone_b1}/runs/complete",
        json={
            "owner_user_id": str(seed.alice),
            "count_type": 1,
            "items": [
                {"ean": EAN_FILM_A, "quantity": "1.0004"},
                {"ean": EAN_FILM_A, "quantity": "1000000000000"},
            ],
        },
    )

    assert response.status_code == 400
    fields = [e["field"] for e in response.json()["detail"]["errors"]]
    assert fields == ["items[0].quantity", "items[1].quantity"]


async def test_zone_statuses_endpoint(client, seed):
    await client.post(f"/api/v1/zones/{seed.zone_b1}/runs/start", json=_start_body(seed, seed.alice))

    response = await client.get(f"/api/v1/shops/{seed.shop_id}/zones")
    with_disabled = await client.get(
        f"/api/v1/shops/{seed.shop_id}/zones", params={"include_disabled": "true", "count_type": 2}
    )

    assert response.status_code == 200
    b1 = response.json()["zones"][0]
    assert b1["code"] == "B1"
    assert b1["is_busy"] is True
    assert b1["busy_by"] == "Alice"
    assert b1["count_statuses"][0]["status"] == "in_progress"
    assert [z["code"] for z in with_disabled.json()["zones"]] == ["B1", "B2", "B3"]
    assert with_disabled.json()["zones"][0]["is_busy"] is False


async def test_zone_statuses_endpoint_failures(client, seed):
    unknown = await client.get(f"/api/v1/shops/{uuid4()}/zones")
    bad_type = await client.get(f"/api/v1/shops/{seed.shop_id}/zones", params={"count_type": 7})

    assert unknown.status_code == 404
    assert unknown.json()["detail"]["code"] == "ShopNotFound"
    assert bad_type.status_code == 400


async def test_zone_conflicts_endpoint(client, seed, clock):
    await _complete(client, seed, seed.zone_b1, seed.alice, 1, [{"ean": EAN_FILM_A, "quantity": 4}])
    clock.advance(timedelta(minutes=15))
    await _complete(client, seed, seed.zone_b1, seed.bob, 2, [{"ean": EAN_FILM_A, "quantity": 6}])

    response = await client.get(f"/api/v1/zones/{seed.zone_b1}/conflicts")
    missing = await client.get(f"/api/v1/zones/{uuid4()}/conflicts")

    assert response.status_code == 200
    body = response.json()
    assert body["has_conflicts"] is True
    assert [run["operator"] for run in body["runs"]] == ["Alice", "Bob"]
    item = body["items"][0]
    assert item["sku"] == "DVD-001"
    assert Decimal(str(item["qty_c1"])) == Decimal("4")
    assert Decimal(str(item["qty_c2"])) == Decimal("6")
    assert item["qty_c3"] is None
    assert missing.status_code == 404


async def test_inventory_report_endpoints(client, seed, clock):
    await _complete(client, seed, seed.zone_b1, seed.alice, 1, [
        {"ean": EAN_FILM_A, "quantity": "2.5"},
        {"ean": EAN_FILM_A, "quantity": 1},
    ])

    summary = await client.get(f"/api/v1/shops/{seed.shop_id}/reports/inventory/zones")
    zones_csv = await client.get(f"/api/v1/shops/{seed.shop_id}/reports/inventory/zones.csv")
    sku_csv = await client.get(f"/api/v1/shops/{seed.shop_id}/reports/inventory/sku.csv")

    assert summary.status_code == 200
    zone = summary.json()["zones"][0]
    assert zone["zone_code"] == "B1"
    assert zone["operator"] == "Alice"
    assert Decimal(str(zone["items"][0]["quantity"])) == Decimal("3.5")

    assert zones_csv.status_code == 200
    assert zones_csv.headers["content-type"].startswith("text/csv")
    assert zones_csv.headers["content-disposition"] == (
        "attachment; filename=inventory_zones_20240301_090000.csv"
    )
    assert zones_csv.content.startswith(b"\xef\xbb\xbf")
    assert "Zone;B1 - DVD aisle;Operator;Alice" in zones_csv.text
    assert f"{EAN_FILM_A};DVD-001;Film A;3.5" in zones_csv.text

    assert sku_csv.status_code == 200
    assert sku_csv.text.lstrip("\ufeff").splitlines() == [
        "SKU/item;Zone;Validated quantity",
        "DVD-001;B1 - DVD aisle;3.5",
    ]


async def test_inventory_report_unknown_shop(client):
    response = await client.get(f"/api/v1/shops/{uuid4()}/reports/inventory/sku.csv")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "ShopNotFound"
