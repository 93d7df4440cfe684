"""MoMo gateway callbacks and transaction lookups."""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import RedirectResponse

from storefront.common import ServiceSettings

from ..dependencies import get_app_settings, get_momo_client, get_payment_reconciler
from ..errors import ShopError, as_http_exception
from ..momo import MomoClient, describe_result_code
from ..payments import AuthoritativePaymentUpdate, BestEffortPaymentUpdate, PaymentReconciler
from ..schemas import MomoIpnPayload, MomoQueryResponse, MomoTransactionData, ResultCodeResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/momo", tags=["payments"])


@router.post("/ipn", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def momo_ipn(
    payload: MomoIpnPayload,
    gateway: MomoClient = Depends(get_momo_client),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> Response:
    """Server-to-server notification; the only source that can mark a payment verified."""

    logger.info("MoMo IPN received for %s (resultCode %s)", payload.order_id, payload.result_code)
    try:
        update = AuthoritativePaymentUpdate.from_ipn(payload, gateway)
        await reconciler.apply(update)
    except ShopError as exc:
        logger.warning("MoMo IPN for %s rejected: %s", payload.order_id, exc.message)
        raise as_http_exception(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/return", response_class=RedirectResponse, status_code=status.HTTP_302_FOUND)
async def momo_return(
    order_id: str = Query(..., alias="orderId"),
    result_code: int | None = Query(default=None, alias="resultCode"),
    trans_id: str | None = Query(default=None, alias="transId"),
    message: str | None = Query(default=None),
    settings: ServiceSettings = Depends(get_app_settings),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> RedirectResponse:
    if result_code is not None and trans_id:
        update = BestEffortPaymentUpdate.from_return(
            order_id=order_id, result_code=result_code, message=message, trans_id=trans_id
        )
        try:
            await reconciler.apply(update)
        except ShopError as exc:
            logger.error("Error processing MoMo return for %s: %s", order_id, exc.message)

    query = urlencode(
        {
            "orderId": order_id,
            "status": "success" if result_code == 0 else "failed",
            "transId": trans_id or "",
            "message": message or "",
        }
    )
    return RedirectResponse(
        url=f"{settings.frontend_url.rstrip('/')}/payment/result?{query}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/query", response_model=MomoQueryResponse)
async def query_transaction(
    order_id: str = Query(..., alias="orderId", min_length=1),
    request_id: str | None = Query(default=None, alias="requestId"),
    gateway: MomoClient = Depends(get_momo_client),
) -> MomoQueryResponse:
    resolved_request_id = request_id or f"query_{order_id}_{gateway.clock()}"
    try:
        body = await gateway.query_transaction(order_id, resolved_request_id)
    except ShopError as exc:
        raise as_http_exception(exc) from exc

    result_code = int(body.get("resultCode", -1))
    data = MomoTransactionData(
        order_id=str(body.get("orderId", order_id)),
        amount=body.get("amount"),
        trans_id=body.get("transId"),
        result_code=result_code,
        message=body.get("message"),
        description=describe_result_code(result_code),
    )
    return MomoQueryResponse(success=result_code == 0, data=data)


@router.get("/result-codes", response_model=ResultCodeResponse, response_model_by_alias=True)
async def result_code_description(code: int = Query(...)) -> ResultCodeResponse:
    return ResultCodeResponse(result_code=code, description=describe_result_code(code))
