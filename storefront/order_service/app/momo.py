"""MoMo wallet gateway: composite order ids, request signing and the HTTP client."""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any, Final

import httpx

from storefront.common import ServiceSettings, get_tracer

from .errors import GatewayError, GatewayUnavailableError
from .metrics import GATEWAY_FAILURES_TOTAL, GATEWAY_REQUEST_SECONDS
from .schemas import MomoIpnPayload

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

CREATE_PATH: Final = "/v2/gateway/api/create"
QUERY_PATH: Final = "/v2/gateway/api/query"
DEFAULT_REQUEST_TYPE: Final = "payWithMethod"

CREATE_SIGNATURE_FIELDS: Final = (
    "accessKey",
    "amount",
    "extraData",
    "ipnUrl",
    "orderId",
    "orderInfo",
    "partnerCode",
    "redirectUrl",
    "requestId",
    "requestType",
)
IPN_SIGNATURE_FIELDS: Final = (
    "accessKey",
    "amount",
    "extraData",
    "message",
    "orderId",
    "orderInfo",
    "orderType",
    "partnerCode",
    "payType",
    "requestId",
    "responseTime",
    "resultCode",
    "transId",
)
QUERY_SIGNATURE_FIELDS: Final = ("accessKey", "orderId", "partnerCode", "requestId")

RESULT_CODE_DESCRIPTIONS: Final[dict[int, str]] = {
    0: "Thành công",
    9000: "Giao dịch đã được xác nhận thành công",
    8000: "Giao dịch đang chờ xử lý",
    7000: "Giao dịch đang được xử lý",
    1000: "Giao dịch đã được khởi tạo, chờ người dùng xác nhận",
    11: "Truy cập bị từ chối",
    12: "Phiên bản API không được hỗ trợ",
    13: "Xác thực doanh nghiệp thất bại",
    20: "Yêu cầu không hợp lệ",
    21: "Số tiền không hợp lệ",
    40: "RequestId trùng lặp",
    41: "OrderId trùng lặp",
    42: "OrderId không hợp lệ hoặc không tìm thấy",
    43: "Yêu cầu bị từ chối do xung đột trong quá trình xử lý",
    1001: "Thanh toán thất bại do tài khoản người dùng không đủ số dư",
    1002: "Giao dịch bị từ chối do nhà phát hành tài khoản thanh toán",
    1003: "Giao dịch bị hủy",
    1004: "Giao dịch thất bại do số tiền vượt quá hạn mức thanh toán",
    1005: "Giao dịch thất bại do url hoặc QR code đã hết hạn",
    1006: "Giao dịch thất bại do người dùng đã từ chối xác nhận",
    1007: "Giao dịch bị từ chối do tài khoản không tồn tại",
    1026: "Giao dịch bị hạn chế theo thể lệ chương trình",
    1080: "Giao dịch hoàn tiền bị từ chối",
    1081: "Giao dịch hoàn tiền đã được thực hiện trước đó",
    2019: "Yêu cầu bị từ chối do hoạt động bất thường",
    4001: "Giao dịch bị hạn chế do chưa hoàn thành xác thực tài khoản",
    4100: "Giao dịch thất bại do người dùng không đăng nhập thành công",
}


def describe_result_code(result_code: int) -> str:
    return RESULT_CODE_DESCRIPTIONS.get(result_code, f"Mã lỗi không xác định: {result_code}")


def now_ms() -> int:
    return int(time.time() * 1000)


class GatewayOrderKind(str, Enum):
    INITIAL = "initial"
    RETRY = "retry"


@dataclass(frozen=True, slots=True)
class GatewayOrderId:
    """The ``orderId`` MoMo sees: our order number plus a per-attempt suffix.

    ``{number}_{ts}`` for the first attempt, ``{number}_R{ts}`` for retries.
    Decoding splits on the last underscore so order numbers may contain ``_``.
    """

    kind: GatewayOrderKind
    order_number: str
    timestamp: int | None = None

    def encode(self) -> str:
        if self.timestamp is None:
            return self.order_number
        if self.kind is GatewayOrderKind.RETRY:
            return f"{self.order_number}_R{self.timestamp}"
        return f"{self.order_number}_{self.timestamp}"

    @classmethod
    def decode(cls, value: str) -> GatewayOrderId:
        head, sep, tail = value.rpartition("_")
        if sep and head:
            if tail.startswith("R") and tail[1:].isdigit():
                return cls(GatewayOrderKind.RETRY, head, int(tail[1:]))
            if tail.isdigit():
                return cls(GatewayOrderKind.INITIAL, head, int(tail))
        return cls(GatewayOrderKind.INITIAL, value)


def raw_signature(fields: tuple[str, ...], values: Mapping[str, Any]) -> str:
    return "&".join(f"{name}={values[name]}" for name in fields)


def sign(secret_key: str, raw: str) -> str:
    return hmac.new(secret_key.encode("utf-8"), raw.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(slots=True)
class MomoPaymentRequest:
    order_id: str
    order_info: str
    amount: int
    extra_data: str = ""
    request_type: str = DEFAULT_REQUEST_TYPE
    items: list[dict[str, Any]] | None = None
    user_info: dict[str, str] | None = None


@dataclass(frozen=True, slots=True)
class MomoPayment:
    order_id: str
    request_id: str
    pay_url: str | None
    deeplink: str | None
    qr_code_url: str | None
    result_code: int
    message: str


class MomoClient:
    """Talks to the MoMo v2 gateway over a shared ``httpx.AsyncClient``."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: ServiceSettings,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._client = client
        self.partner_code = settings.momo_partner_code
        self.access_key = settings.momo_access_key
        self._secret_key = settings.momo_secret_key
        self.endpoint = settings.resolved_momo_endpoint
        self.ipn_url = settings.resolved_momo_ipn_url
        self.redirect_url = settings.momo_redirect_url
        self.timeout = settings.momo_timeout_seconds
        self.clock = clock

    def verify_ipn(self, payload: MomoIpnPayload) -> bool:
        values = payload.model_dump(by_alias=True)
        values["accessKey"] = self.access_key
        expected = sign(self._secret_key, raw_signature(IPN_SIGNATURE_FIELDS, values))
        valid = hmac.compare_digest(expected, payload.signature)
        if not valid:
            logger.error("Invalid IPN signature for MoMo order %s", payload.order_id)
        return valid

    def sign_ipn(self, payload: Mapping[str, Any]) -> str:
        """Signature MoMo would attach to ``payload``; used by tooling and tests."""

        values = dict(payload)
        values["accessKey"] = self.access_key
        return sign(self._secret_key, raw_signature(IPN_SIGNATURE_FIELDS, values))

    async def create_payment(self, request: MomoPaymentRequest) -> MomoPayment:
        request_id = f"{request.order_id}_{self.clock()}"
        values = {
            "accessKey": self.access_key,
            "amount": request.amount,
            "extraData": request.extra_data,
            "ipnUrl": self.ipn_url,
            "orderId": request.order_id,
            "orderInfo": request.order_info,
            "partnerCode": self.partner_code,
            "redirectUrl": self.redirect_url,
            "requestId": request_id,
            "requestType": request.request_type,
        }
        raw = raw_signature(CREATE_SIGNATURE_FIELDS, values)
        logger.debug("MoMo create raw signature: %s", raw)
        body: dict[str, Any] = {
            **values,
            "signature": sign(self._secret_key, raw),
            "lang": "vi",
        }
        if request.items:
            body["items"] = request.items
        if request.user_info:
            body["userInfo"] = request.user_info

        logger.info("Creating MoMo payment for order %s", request.order_id)
        data = await self._post("create", CREATE_PATH, body)
        result_code = int(data.get("resultCode", -1))
        if result_code != 0:
            message = data.get("message") or describe_result_code(result_code)
            GATEWAY_FAILURES_TOTAL.labels(operation="create", kind="rejected").inc()
            logger.error("MoMo payment creation failed for %s: %s", request.order_id, message)
            raise GatewayError(f"Could not create MoMo payment: {message}")

        return MomoPayment(
            order_id=request.order_id,
            request_id=request_id,
            pay_url=data.get("payUrl"),
            deeplink=data.get("deeplink"),
            qr_code_url=data.get("qrCodeUrl"),
            result_code=result_code,
            message=data.get("message", ""),
        )

    async def query_transaction(self, order_id: str, request_id: str) -> dict[str, Any]:
        values = {
            "accessKey": self.access_key,
            "orderId": order_id,
            "partnerCode": self.partner_code,
            "requestId": request_id,
        }
        body = {
            "partnerCode": self.partner_code,
            "accessKey": self.access_key,
            "requestId": request_id,
            "orderId": order_id,
            "signature": sign(self._secret_key, raw_signature(QUERY_SIGNATURE_FIELDS, values)),
            "lang": "vi",
        }
        return await self._post("query", QUERY_PATH, body)

    async def _post(self, operation: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        start = perf_counter()
        with tracer.start_as_current_span(f"momo.{operation}") as span:
            span.set_attribute("momo.order_id", str(body.get("orderId", "")))
            try:
                response = await self._client.post(f"{self.endpoint}{path}", json=body, timeout=self.timeout)
            except httpx.HTTPError as exc:
                GATEWAY_FAILURES_TOTAL.labels(operation=operation, kind="unavailable").inc()
                logger.error("MoMo %s request failed: %s", operation, exc)
                raise GatewayUnavailableError("Could not reach MoMo. Please try again later.") from exc
            finally:
                GATEWAY_REQUEST_SECONDS.labels(operation=operation).observe(perf_counter() - start)

            if response.status_code >= 500:
                GATEWAY_FAILURES_TOTAL.labels(operation=operation, kind="unavailable").inc()
                logger.error("MoMo %s answered HTTP %s", operation, response.status_code)
                raise GatewayUnavailableError("Could not reach MoMo. Please try again later.")
            try:
                data = response.json()
            except ValueError as exc:
                GATEWAY_FAILURES_TOTAL.labels(operation=operation, kind="unavailable").inc()
                raise GatewayUnavailableError("MoMo returned an unreadable response.") from exc
            span.set_attribute("momo.result_code", int(data.get("resultCode", -1)))
        logger.debug("MoMo %s response: %s", operation, data)
        return data
