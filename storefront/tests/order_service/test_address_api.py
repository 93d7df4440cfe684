import asyncio
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from storefront.common import ServiceSettings, create_engine, dispose_engines
from storefront.order_service.app.main import create_app
from storefront.order_service.app.models import Base, User


def _run(coro):
    return asyncio.run(coro)


async def _prepare_app(tmp_path) -> FastAPI:
    db_file = tmp_path / "addresses.db"
    database_url = f"sqlite+aiosqlite:///{db_file}"

    engine = create_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()

    settings = ServiceSettings(
        app_name="Address Book Test",
        enable_metrics=False,
        enable_tracing=False,
        database_url=database_url,
    )
    return create_app(settings)


async def _seed_users(app: FastAPI) -> tuple[dict[str, str], dict[str, str]]:
    async with app.state.session_factory() as session:
        owner = User(email="owner@example.com", full_name="Pham Van D")
        other = User(email="other@example.com", full_name="Hoang Thi E")
        session.add_all([owner, other])
        await session.commit()
        return {"X-User-Id": str(owner.id)}, {"X-User-Id": str(other.id)}


def _address_payload(**overrides: Any) -> dict[str, Any]:
    payload = {
        "recipient_name": "Pham Van D",
        "phone": "0987654321",
        "address_line": "268 Ly Thuong Kiet",
        "ward": "Phuong 14",
        "district": "Quan 10",
        "city": "Ho Chi Minh",
        "postal_code": "700000",
    }
    payload.update(overrides)
    return payload


def test_address_book_lifecycle(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            owner, other = await _seed_users(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                no_default = await client.get("/addresses/default", headers=owner)
                assert no_default.status_code == 404

                home = await client.post("/addresses", json=_address_payload(), headers=owner)
                assert home.status_code == 201
                home = home.json()
                assert home["is_default"] is True
                assert home["full_address"] == "268 Ly Thuong Kiet, Phuong 14, Quan 10, Ho Chi Minh"

                office = await client.post(
                    "/addresses",
                    json=_address_payload(address_line="1 Dai Co Viet", city="Ha Noi", address_type="office"),
                    headers=owner,
                )
                office = office.json()
                assert office["is_default"] is False

                listing = await client.get("/addresses", headers=owner)
                assert [entry["id"] for entry in listing.json()] == [home["id"], office["id"]]

                promoted = await client.patch(f"/addresses/{office['id']}/default", headers=owner)
                assert promoted.json()["is_default"] is True
                default = await client.get("/addresses/default", headers=owner)
                assert default.json()["id"] == office["id"]
                demoted = await client.get(f"/addresses/{home['id']}", headers=owner)
                assert demoted.json()["is_default"] is False

                renamed = await client.patch(
                    f"/addresses/{home['id']}", json={"recipient_name": "Pham Thi D"}, headers=owner
                )
                assert renamed.json()["recipient_name"] == "Pham Thi D"
                assert renamed.json()["city"] == "Ho Chi Minh"

                deleted = await client.delete(f"/addresses/{office['id']}", headers=owner)
                assert deleted.status_code == 204
                successor = await client.get("/addresses/default", headers=owner)
                assert successor.json()["id"] == home["id"]

                missing = await client.get(f"/addresses/{office['id']}", headers=owner)
                assert missing.status_code == 404

                assert (await client.get("/addresses", headers=other)).json() == []

    _run(body())
    _run(dispose_engines())


def test_address_validation_and_ownership(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            owner, other = await _seed_users(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                bad_phone = await client.post("/addresses", json=_address_payload(phone="12345"), headers=owner)
                assert bad_phone.status_code == 422
                bad_postal = await client.post(
                    "/addresses", json=_address_payload(postal_code="70A"), headers=owner
                )
                assert bad_postal.status_code == 422
                anonymous = await client.post("/addresses", json=_address_payload())
                assert anonymous.status_code == 401
                ghost = await client.post("/addresses", json=_address_payload(), headers={"X-User-Id": "4242"})
                assert ghost.status_code == 401

                created = (await client.post("/addresses", json=_address_payload(), headers=owner)).json()

                foreign_read = await client.get(f"/addresses/{created['id']}", headers=other)
                assert foreign_read.status_code == 403
                foreign_update = await client.patch(
                    f"/addresses/{created['id']}", json={"city": "Hue"}, headers=other
                )
                assert foreign_update.status_code == 403
                foreign_delete = await client.delete(f"/addresses/{created['id']}", headers=other)
                assert foreign_delete.status_code == 403

                unchanged = await client.get(f"/addresses/{created['id']}", headers=owner)
                assert unchanged.json()["city"] == "Ho Chi Minh"

    _run(body())
    _run(dispose_engines())


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield
