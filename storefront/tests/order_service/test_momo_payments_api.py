import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import REGISTRY
from sqlalchemy import func, select

from storefront.common import ServiceSettings, create_engine, dispose_engines
from storefront.order_service.app.dependencies import get_momo_client
from storefront.order_service.app.main import create_app
from storefront.order_service.app.models import Address, Base, Cart, CartItem, Order, Product, User
from storefront.order_service.app.momo import MomoClient
from storefront.order_service.app.notifications import EmailProvider, InMemoryEmailProvider

_NOW_MS = 1_700_000_000_000


def _run(coro):
    return asyncio.run(coro)


def _settings(database_url: str) -> ServiceSettings:
    return ServiceSettings(
        app_name="Payment Callback Test",
        enable_metrics=False,
        enable_tracing=False,
        database_url=database_url,
        frontend_url="https://shop.example.vn",
    )


async def _prepare_app(tmp_path, *, email_provider: EmailProvider | None = None) -> FastAPI:
    db_file = tmp_path / "payments.db"
    database_url = f"sqlite+aiosqlite:///{db_file}"

    engine = create_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()
    return create_app(_settings(database_url), email_provider=email_provider)


class _FakeMomo:
    """Scripted MoMo sandbox behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.available = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.available:
            raise httpx.ConnectError("connection refused", request=request)
        body = json.loads(request.content)
        self.requests.append(body)
        if request.url.path.endswith("/query"):
            return httpx.Response(
                200,
                json={"orderId": body["orderId"], "resultCode": 0, "amount": 250000, "transId": 555, "message": "ok"},
            )
        return httpx.Response(
            200,
            json={
                "resultCode": 0,
                "message": "Thành công.",
                "payUrl": f"https://test-payment.momo.vn/pay/{body['orderId']}",
                "deeplink": f"momo://pay?orderId={body['orderId']}",
                "qrCodeUrl": f"https://test-payment.momo.vn/qr/{body['orderId']}",
            },
        )

    def client(self, settings: ServiceSettings) -> MomoClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return MomoClient(http_client, settings, clock=lambda: _NOW_MS)


class _MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


def _install_gateway(app: FastAPI) -> tuple[_FakeMomo, MomoClient]:
    fake = _FakeMomo()
    gateway = fake.client(app.state.settings)
    app.dependency_overrides[get_momo_client] = lambda: gateway
    return fake, gateway


async def _seed_customer(app: FastAPI) -> dict[str, Any]:
    async with app.state.session_factory() as session:
        user = User(email="momo@example.com", full_name="Tran Thi B", phone="0912345678")
        product = Product(name="Mechanical Keyboard", slug="mech-kb", sku="KB-001", price=100_000, stock_quantity=10)
        session.add_all([user, product])
        await session.flush()
        address = Address(
            user_id=user.id,
            recipient_name="Tran Thi B",
            phone="0912345678",
            address_line="45 Le Loi",
            city="Da Nang",
            is_default=True,
        )
        cart = Cart(user_id=user.id)
        session.add_all([address, cart])
        await session.flush()
        session.add(CartItem(cart_id=cart.id, product_id=product.id, quantity=2, unit_price=100_000))
        await session.commit()
        return {
            "address_id": address.id,
            "product_id": product.id,
            "headers": {"X-User-Id": str(user.id)},
        }


async def _checkout(client: AsyncClient, customer: dict[str, Any], payment_method: str = "momo") -> httpx.Response:
    return await client.post(
        "/orders",
        json={"shipping_address_id": customer["address_id"], "payment_method": payment_method},
        headers=customer["headers"],
    )


async def _load_order(app: FastAPI, order_id: int) -> Order:
    async with app.state.session_factory() as session:
        return await session.get(Order, order_id)


def _ipn(gateway: MomoClient, order_id: str, *, result_code: int = 0, trans_id: int = 4088878653) -> dict:
    values = {
        "partnerCode": "MOMO",
        "orderId": order_id,
        "requestId": f"{order_id}_{_NOW_MS}",
        "amount": 250000,
        "orderInfo": "Thanh toán đơn hàng",
        "orderType": "momo_wallet",
        "transId": trans_id,
        "resultCode": result_code,
        "message": "Thành công." if result_code == 0 else "Giao dịch bị từ chối",
        "payType": "qr",
        "responseTime": _NOW_MS + 5000,
        "extraData": "",
    }
    return {**values, "signature": gateway.sign_ipn(values)}


def test_momo_checkout_returns_payment_links(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            fake, _gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                resp = await _checkout(client, customer)
                assert resp.status_code == 201
                checkout = resp.json()
                number = checkout["order"]["order_number"]
                gateway_id = f"{number}_{_NOW_MS}"
                assert checkout["payment_url"] == f"https://test-payment.momo.vn/pay/{gateway_id}"
                assert checkout["payment_deeplink"].startswith("momo://")
                assert checkout["payment_qr_code"].endswith(gateway_id)

            sent = fake.requests[0]
            assert sent["orderId"] == gateway_id
            assert sent["amount"] == 250000
            assert sent["extraData"] == ""
            assert sent["items"][0]["quantity"] == 2
            order = await _load_order(app, checkout["order"]["id"])
            assert order.momo_order_id == gateway_id
            assert order.payment_verified is False

    _run(body())
    _run(dispose_engines())


def test_gateway_outage_keeps_order_and_retry_succeeds(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            fake, _gateway = _install_gateway(app)
            fake.available = False
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                resp = await _checkout(client, customer)
                assert resp.status_code == 503

                listing = await client.get("/orders", headers=customer["headers"])
                assert listing.json()["total"] == 1
                order = listing.json()["items"][0]
                assert order["payment_status"] == "unpaid"
                cart = await client.get("/cart", headers=customer["headers"])
                assert cart.json()["items"] == []

                fake.available = True
                retry = await client.post(f"/orders/{order['id']}/retry-payment", headers=customer["headers"])
                assert retry.status_code == 200
                retry_id = f"{order['order_number']}_R{_NOW_MS}"
                assert retry.json()["payment_url"].endswith(retry_id)

            assert fake.requests[-1]["orderId"] == retry_id
            assert fake.requests[-1]["extraData"] != ""
            stored = await _load_order(app, order["id"])
            assert stored.momo_order_id == retry_id
            async with app.state.session_factory() as session:
                assert (await session.execute(select(func.count(Order.id)))).scalar_one() == 1
                product = await session.get(Product, customer["product_id"])
                assert product.stock_quantity == 8

    _run(body())
    _run(dispose_engines())


def test_ipn_is_idempotent(tmp_path) -> None:
    provider = InMemoryEmailProvider()
    app = _run(_prepare_app(tmp_path, email_provider=provider))

    async def body() -> None:
        async with lifespan(app):
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            paid_tracker = _MetricTracker("storefront_payment_callbacks_total", {"source": "ipn", "outcome": "paid"})
            skipped_tracker = _MetricTracker(
                "storefront_payment_callbacks_total", {"source": "ipn", "outcome": "already_paid"}
            )
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order = (await _checkout(client, customer)).json()["order"]
                payload = _ipn(gateway, f"{order['order_number']}_{_NOW_MS}")

                first = await client.post("/payments/momo/ipn", json=payload)
                assert first.status_code == 204
                after_first = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()

                second = await client.post("/payments/momo/ipn", json=payload)
                assert second.status_code == 204
                after_second = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()

            assert after_first["payment_status"] == "paid"
            assert after_first["status"] == "Confirmed"
            assert after_first["momo_trans_id"] == "4088878653"
            assert after_first["paid_at"] is not None
            for field in ("payment_status", "status_id", "paid_at", "momo_trans_id"):
                assert after_second[field] == after_first[field]
            assert [entry["note"] for entry in after_second["history"]] == [
                "Order created",
                "MoMo payment succeeded. Transaction: 4088878653",
            ]
            assert after_second["history"][-1]["status_id"] == 2

            stored = await _load_order(app, order["id"])
            assert stored.payment_verified is True
            async with app.state.session_factory() as session:
                product = await session.get(Product, customer["product_id"])
                assert product.stock_quantity == 8

            emails = provider.sent
            assert len(emails) == 1
            assert emails[0].recipient == "momo@example.com"
            assert emails[0].template == "payment-success"
            assert emails[0].context["transaction_id"] == "4088878653"
            assert paid_tracker.delta() == 1
            assert skipped_tracker.delta() == 1

    _run(body())
    _run(dispose_engines())


def test_ipn_signature_and_unknown_order(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order = (await _checkout(client, customer)).json()["order"]
                forged = _ipn(gateway, f"{order['order_number']}_{_NOW_MS}")
                forged["amount"] = 1

                rejected = await client.post("/payments/momo/ipn", json=forged)
                assert rejected.status_code == 400
                assert rejected.json()["detail"] == "Invalid IPN signature"

                unchanged = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert unchanged["payment_status"] == "unpaid"
                assert len(unchanged["history"]) == 1

                unknown = await client.post("/payments/momo/ipn", json=_ipn(gateway, f"ORD-19990101-0001_{_NOW_MS}"))
                assert unknown.status_code == 404

                malformed = await client.post("/payments/momo/ipn", json={"orderId": "x"})
                assert malformed.status_code == 422

    _run(body())
    _run(dispose_engines())


def test_failed_ipn_then_retry(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order = (await _checkout(client, customer)).json()["order"]
                failed = await client.post(
                    "/payments/momo/ipn",
                    json=_ipn(gateway, f"{order['order_number']}_{_NOW_MS}", result_code=1006),
                )
                assert failed.status_code == 204

                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "failed"
                assert current["status"] == "Pending"
                assert current["history"][-1]["note"] == "MoMo payment failed: Giao dịch bị từ chối"

                # The customer's browser claims success for the attempt IPN already settled.
                redirect = await client.get(
                    "/payments/momo/return",
                    params={
                        "orderId": f"{order['order_number']}_{_NOW_MS}",
                        "resultCode": 0,
                        "transId": "111",
                        "message": "Successful.",
                    },
                )
                assert redirect.status_code == 302
                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "failed"

                retry = await client.post(f"/orders/{order['id']}/retry-payment", headers=customer["headers"])
                assert retry.status_code == 200

                # The first attempt's redirect is stale once a retry has been issued.
                stale = await client.get(
                    "/payments/momo/return",
                    params={"orderId": f"{order['order_number']}_{_NOW_MS}", "resultCode": 0, "transId": "112"},
                )
                assert stale.status_code == 302
                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "failed"

                retried = await client.post(
                    "/payments/momo/ipn",
                    json=_ipn(gateway, f"{order['order_number']}_R{_NOW_MS}", trans_id=999),
                )
                assert retried.status_code == 204
                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "paid"
                assert current["status"] == "Confirmed"

                paid_retry = await client.post(f"/orders/{order['id']}/retry-payment", headers=customer["headers"])
                assert paid_retry.status_code == 400

    _run(body())
    _run(dispose_engines())


def test_return_redirect_applies_best_effort_update(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order = (await _checkout(client, customer)).json()["order"]
                gateway_id = f"{order['order_number']}_{_NOW_MS}"

                redirect = await client.get(
                    "/payments/momo/return",
                    params={"orderId": gateway_id, "resultCode": 0, "transId": "777", "message": "Successful."},
                )
                assert redirect.status_code == 302
                location = urlparse(redirect.headers["location"])
                assert f"{location.scheme}://{location.netloc}{location.path}" == (
                    "https://shop.example.vn/payment/result"
                )
                assert parse_qs(location.query) == {
                    "orderId": [gateway_id],
                    "status": ["success"],
                    "transId": ["777"],
                    "message": ["Successful."],
                }

                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "paid"
                assert current["status"] == "Confirmed"
                stored = await _load_order(app, order["id"])
                assert stored.payment_verified is False

                late_ipn = await client.post("/payments/momo/ipn", json=_ipn(gateway, gateway_id))
                assert late_ipn.status_code == 204
                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert len(current["history"]) == 2

                unknown = await client.get(
                    "/payments/momo/return",
                    params={"orderId": "ORD-19990101-0009_1", "resultCode": 1006, "transId": "1"},
                )
                assert unknown.status_code == 302
                assert "status=failed" in unknown.headers["location"]

                cancelled_by_user = await client.get("/payments/momo/return", params={"orderId": gateway_id})
                assert cancelled_by_user.status_code == 302
                assert "status=failed" in cancelled_by_user.headers["location"]

    _run(body())
    _run(dispose_engines())


def test_payment_for_cancelled_order_is_ignored(tmp_path) -> None:
    provider = InMemoryEmailProvider()
    app = _run(_prepare_app(tmp_path, email_provider=provider))

    async def body() -> None:
        async with lifespan(app):
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order = (await _checkout(client, customer)).json()["order"]
                cancel = await client.patch(f"/orders/{order['id']}/cancel", headers=customer["headers"])
                assert cancel.status_code == 200

                late = await client.post(
                    "/payments/momo/ipn", json=_ipn(gateway, f"{order['order_number']}_{_NOW_MS}")
                )
                assert late.status_code == 204

                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["status"] == "Cancelled"
                assert current["payment_status"] == "unpaid"
                assert len(current["history"]) == 2

            assert provider.sent == []

    _run(body())
    _run(dispose_engines())


def test_query_and_result_codes(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            fake, _gateway = _install_gateway(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                query = await client.get("/payments/momo/query", params={"orderId": "ORD-20250101-0001_1"})
                assert query.status_code == 200
                assert query.json() == {
                    "success": True,
                    "data": {
                        "orderId": "ORD-20250101-0001_1",
                        "amount": 250000,
                        "transId": 555,
                        "resultCode": 0,
                        "message": "ok",
                        "description": "Thành công",
                    },
                }
                assert fake.requests[-1]["requestId"] == f"query_ORD-20250101-0001_1_{_NOW_MS}"

                explicit = await client.get(
                    "/payments/momo/query", params={"orderId": "ORD-20250101-0001_1", "requestId": "req-1"}
                )
                assert explicit.status_code == 200
                assert fake.requests[-1]["requestId"] == "req-1"

                code = await client.get("/payments/momo/result-codes", params={"code": 1006})
                assert code.json() == {
                    "resultCode": 1006,
                    "description": "Giao dịch thất bại do người dùng đã từ chối xác nhận",
                }

                fake.available = False
                down = await client.get("/payments/momo/query", params={"orderId": "ORD-20250101-0001_1"})
                assert down.status_code == 503

    _run(body())
    _run(dispose_engines())


def test_return_redirect_cannot_settle_orders_never_sent_to_momo(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            not_momo = _MetricTracker("storefront_payment_callbacks_total", {"source": "return", "outcome": "not_momo"})
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                created = await _checkout(client, customer, payment_method="cod")
                assert created.status_code == 201
                order = created.json()["order"]

                redirect = await client.get(
                    "/payments/momo/return",
                    params={"orderId": f"{order['order_number']}_1", "resultCode": 0, "transId": "1"},
                )
                assert redirect.status_code == 302

                signed = await client.post("/payments/momo/ipn", json=_ipn(gateway, f"{order['order_number']}_1"))
                assert signed.status_code == 204

                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "unpaid"
                assert current["status"] == "Pending"
                assert len(current["history"]) == 1

            assert not_momo.delta() == 1

    _run(body())
    _run(dispose_engines())


def test_return_redirect_ignored_when_no_payment_attempt_was_issued(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            fake, _gateway = _install_gateway(app)
            fake.available = False
            customer = await _seed_customer(app)
            no_attempt = _MetricTracker(
                "storefront_payment_callbacks_total", {"source": "return", "outcome": "no_attempt"}
            )
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                assert (await _checkout(client, customer)).status_code == 503
                order = (await client.get("/orders", headers=customer["headers"])).json()["items"][0]

                redirect = await client.get(
                    "/payments/momo/return",
                    params={"orderId": f"{order['order_number']}_{_NOW_MS}", "resultCode": 0, "transId": "2"},
                )
                assert redirect.status_code == 302

                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "unpaid"
                assert current["status"] == "Pending"
                assert len(current["history"]) == 1

            stored = await _load_order(app, order["id"])
            assert stored.momo_order_id is None
            assert no_attempt.delta() == 1

    _run(body())
    _run(dispose_engines())


class _StoredStatusProvider:
    """Looks up the order's stored payment status whenever a confirmation is mailed."""

    def __init__(self) -> None:
        self.session_factory = None
        self.seen: list[str] = []

    async def send(self, *, recipient: str, subject: str, template: str, context: dict[str, Any]) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.payment_status).where(Order.order_number == context["order_number"])
            )
            self.seen.append(result.scalar_one())


def test_success_email_follows_stored_payment(tmp_path) -> None:
    provider = _StoredStatusProvider()
    app = _run(_prepare_app(tmp_path, email_provider=provider))

    async def body() -> None:
        async with lifespan(app):
            provider.session_factory = app.state.session_factory
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order = (await _checkout(client, customer)).json()["order"]
                paid = await client.post(
                    "/payments/momo/ipn", json=_ipn(gateway, f"{order['order_number']}_{_NOW_MS}")
                )
                assert paid.status_code == 204

            assert provider.seen == ["paid"]

    _run(body())
    _run(dispose_engines())


def test_payment_confirms_without_email_provider(tmp_path) -> None:
    app = _run(_prepare_app(tmp_path))

    async def body() -> None:
        async with lifespan(app):
            assert app.state.email_provider is None
            _fake, gateway = _install_gateway(app)
            customer = await _seed_customer(app)
            transport = ASGITransport(app=app)
            async with AsyncClient(transport=transport, base_url="http://test") as client:
                order = (await _checkout(client, customer)).json()["order"]
                paid = await client.post(
                    "/payments/momo/ipn", json=_ipn(gateway, f"{order['order_number']}_{_NOW_MS}")
                )
                assert paid.status_code == 204
                current = (await client.get(f"/orders/{order['id']}", headers=customer["headers"])).json()
                assert current["payment_status"] == "paid"
                assert current["status"] == "Confirmed"

    _run(body())
    _run(dispose_engines())


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with app.router.lifespan_context(app):
        yield
