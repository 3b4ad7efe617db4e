#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Client-facing payment routes."""

from typing import Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Header
from fastapi import Path
from fastapi.responses import JSONResponse

from uss_payments import dependencies
from uss_payments.models import CallerIdentity
from uss_payments.models import CancelOrderResponse
from uss_payments.models import CaptureRequest
from uss_payments.models import CreateOrderRequest
from uss_payments.models import CreateOrderResponse
from uss_payments.models import ProviderCaptureRequest
from uss_payments.services.capture_service import PaymentCaptureService
from uss_payments.services.order_service import PaymentOrderService

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/orders",
    response_model=CreateOrderResponse,
    operation_id="create_payment_order",
)
async def create_payment_order(
    request: CreateOrderRequest = Body(...),
    origin: Optional[str] = Header(None),
    caller: CallerIdentity = Depends(dependencies.caller_identity),
    order_service: PaymentOrderService = Depends(
        dependencies.get_order_service
    ),
) -> CreateOrderResponse:
  """Create a PayPal order for a freight quote or a pricing plan."""
  return await order_service.create_order(request, caller, origin)


@router.post(
    "/orders/{quote_id}/cancel",
    response_model=CancelOrderResponse,
    operation_id="cancel_payment_order",
)
async def cancel_payment_order(
    quote_id: str = Path(...),
    caller: CallerIdentity = Depends(dependencies.caller_identity),
    order_service: PaymentOrderService = Depends(
        dependencies.get_order_service
    ),
) -> CancelOrderResponse:
  """Release a quote whose payment was abandoned on the provider page."""
  return await order_service.cancel_order(quote_id, caller)


@router.post("/capture", operation_id="capture_payment")
async def capture_payment(
    request: CaptureRequest = Body(...),
    idempotency_key: str = Depends(dependencies.idempotency_header),
    caller: CallerIdentity = Depends(dependencies.caller_identity),
    capture_service: PaymentCaptureService = Depends(
        dependencies.get_capture_service
    ),
) -> JSONResponse:
  """Settle a quote with an in-app payment method."""
  # The stored body is returned as is so retries get the same bytes.
  body = await capture_service.capture(request, idempotency_key, caller)
  return JSONResponse(content=body)


@router.post("/paypal/capture", operation_id="capture_paypal_order")
async def capture_paypal_order(
    request: ProviderCaptureRequest = Body(...),
    idempotency_key: str = Depends(dependencies.idempotency_header),
    caller: CallerIdentity = Depends(dependencies.caller_identity),
    capture_service: PaymentCaptureService = Depends(
        dependencies.get_capture_service
    ),
) -> JSONResponse:
  """Capture a buyer-approved PayPal order."""
  body = await capture_service.capture_provider_order(
      request, idempotency_key, caller
  )
  return JSONResponse(status_code=200 if body["ok"] else 402, content=body)
