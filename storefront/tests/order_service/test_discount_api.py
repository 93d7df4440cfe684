import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from storefront.common import ServiceSettings, create_engine, dispose_engines
from storefront.order_service.app.main import create_app
from storefront.order_service.app.models import Address, Base, Cart, CartItem, DiscountCode, Product, User


def _run(coro):
    return asyncio.run(coro)


async def _prepare_app(tmp_path, **overrides: Any) -> FastAPI:
    db_file = tmp_path / "discounts.db"
    database_url = f"sqlite+aiosqlite:///{db_file}"

    engine = create_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()

    settings = ServiceSettings(
        app_name="Discount Test",
        enable_metrics=False,
        enable_tracing=False,
        database_url=database_url,
        **overrides,
    )
    return create_app(settings)


async def _seed(app: FastAPI) -> dict[str, Any]:
    async with app.state.session_factory() as session:
        buyer = User(email="coupon@example.com", full_name="Vu Thi F")
        other = User(email="browser@example.com", full_name="Dang Van G")
        product = Product(name="USB-C Hub", slug="usb-c-hub", sku="HUB-1", price=200_000, stock_quantity=10)
        session.add_all(
            [
                buyer,
                other,
                product,
                DiscountCode(
                    code="SAVE20",
                    discount_type="percentage",
                    discount_value=20,
                    min_order_amount=100_000,
                    max_discount_amount=50_000,
                ),
                DiscountCode(code="FLAT30", discount_type="fixed_amount", discount_value=30_000),
                DiscountCode(code="FREESHIP", discount_type="free_shipping", discount_value=0),
                DiscountCode(
                    code="SUMMER",
                    discount_type="percentage",
                    discount_value=5,
                    ends_at=datetime(2020, 8, 31, tzinfo=timezone.utc),
                ),
                DiscountCode(code="ONCE", discount_type="fixed_amount", discount_value=10_000, max_uses_per_user=1),
            ]
        )
        await session.flush()
        address = Address(
            user_id=buyer.id,
            recipient_name="Vu Thi F",
            phone="0901234567",
            address_line="12 Tran Hung Dao",
            city="Can Tho",
            is_default=True,
        )
        cart = Cart(user_id=buyer.id)
        session.add_all([address, cart])
        await session.flush()
        session.add(CartItem(cart_id=cart.id, product_id=product.id, quantity=1, unit_price=200_000))
        await session.commit()
        return {
            "buyer": {"X-User-Id": str(buyer.id)},
            "other": {"X-User-Id": str(other.id)},
            "address_id": address.id,
        }


def test_validate_prices_codes_without_using_them(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            seeded = await _seed(app)
            buyer = seeded["buyer"]
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                capped = await client.post(
                    "/discounts/validate", json={"code": " save20 ", "order_amount": 400_000}, headers=buyer
                )
                assert capped.status_code == 200
                discount = capped.json()["discount"]
                assert capped.json()["valid"] is True
                assert discount["code"] == "SAVE20"
                assert discount["type"] == "percentage"
                assert discount["discount_amount"] == 50_000
                assert discount["final_amount"] == 350_000

                flat = await client.post(
                    "/discounts/validate", json={"code": "FLAT30", "order_amount": 20_000}, headers=buyer
                )
                assert flat.json()["discount"]["discount_amount"] == 20_000
                assert flat.json()["discount"]["final_amount"] == 0

                no_method = await client.post(
                    "/discounts/validate", json={"code": "FREESHIP", "order_amount": 200_000}, headers=buyer
                )
                assert no_method.json()["discount"]["discount_amount"] == 0
                express = await client.post(
                    "/discounts/validate",
                    json={"code": "FREESHIP", "order_amount": 200_000, "shipping_method": "express"},
                    headers=buyer,
                )
                assert express.json()["discount"]["discount_amount"] == 50_000
                already_free = await client.post(
                    "/discounts/validate",
                    json={"code": "FREESHIP", "order_amount": 600_000, "shipping_method": "express"},
                    headers=buyer,
                )
                assert already_free.json()["discount"]["discount_amount"] == 0

                too_small = await client.post(
                    "/discounts/validate", json={"code": "SAVE20", "order_amount": 50_000}, headers=buyer
                )
                assert too_small.status_code == 400
                assert too_small.json()["detail"] == "Minimum order amount is 100000 VND"

                expired = await client.post(
                    "/discounts/validate", json={"code": "SUMMER", "order_amount": 400_000}, headers=buyer
                )
                assert expired.status_code == 400
                assert expired.json()["detail"] == "Discount code has expired"

                unknown = await client.post(
                    "/discounts/validate", json={"code": "NOPE", "order_amount": 400_000}, headers=buyer
                )
                assert unknown.status_code == 404
                assert unknown.json()["detail"] == "Invalid discount code"

                negative = await client.post(
                    "/discounts/validate", json={"code": "SAVE20", "order_amount": -1}, headers=buyer
                )
                assert negative.status_code == 422
                anonymous = await client.post("/discounts/validate", json={"code": "SAVE20", "order_amount": 1})
                assert anonymous.status_code == 401

            async with app.state.session_factory() as session:
                used = (await session.execute(select(DiscountCode.used_count))).scalars().all()
                assert set(used) == {0}

    _run(body())
    _run(dispose_engines())


def test_usage_history_and_per_user_limit(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            seeded = await _seed(app)
            buyer = seeded["buyer"]
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                before = await client.get("/discounts/my-usage", headers=buyer)
                assert before.json() == {"usage": []}

                checkout = await client.post(
                    "/orders",
                    json={
                        "shipping_address_id": seeded["address_id"],
                        "payment_method": "bank_transfer",
                        "discount_code": "once",
                    },
                    headers=buyer,
                )
                assert checkout.status_code == 201
                order = checkout.json()["order"]
                assert order["total_amount"] == 200_000 + 30_000 + 20_000 - 10_000

                history = (await client.get("/discounts/my-usage", headers=buyer)).json()["usage"]
                assert len(history) == 1
                entry = history[0]
                assert entry["code"] == "ONCE"
                assert entry["type"] == "fixed_amount"
                assert entry["discount_amount"] == 10_000
                assert entry["order_number"] == order["order_number"]
                assert entry["order_total"] == 240_000
                assert entry["used_at"]

                again = await client.post(
                    "/discounts/validate", json={"code": "ONCE", "order_amount": 200_000}, headers=buyer
                )
                assert again.status_code == 400
                assert again.json()["detail"] == "You have reached the usage limit for this discount code"

                elsewhere = await client.post(
                    "/discounts/validate", json={"code": "ONCE", "order_amount": 200_000}, headers=seeded["other"]
                )
                assert elsewhere.status_code == 200
                assert (await client.get("/discounts/my-usage", headers=seeded["other"])).json() == {"usage": []}

    _run(body())
    _run(dispose_engines())


def test_validate_refused_when_codes_disabled(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path, discount_codes_enabled=False))

    async def body() -> None:
        async with lifespan(app):
            seeded = await _seed(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                refused = await client.post(
                    "/discounts/validate",
                    json={"code": "SAVE20", "order_amount": 400_000},
                    headers=seeded["buyer"],
                )
                assert refused.status_code == 400
                assert refused.json()["detail"] == "Discount codes are not accepted at the moment"

    _run(body())
    _run(dispose_engines())


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield
