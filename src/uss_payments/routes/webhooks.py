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

"""PayPal webhook endpoint."""

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Request

from uss_payments import dependencies
from uss_payments.models import WebhookAck
from uss_payments.services.webhook_reconciler import WebhookReconciler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/paypal",
    response_model=WebhookAck,
    operation_id="paypal_webhook",
)
async def paypal_webhook(
    request: Request,
    reconciler: WebhookReconciler = Depends(
        dependencies.get_webhook_reconciler
    ),
) -> WebhookAck:
  """Receive a PayPal event.

  The raw body and headers are handed over untouched: the signature covers
  the exact bytes PayPal sent.
  """
  raw_body = await request.body()
  return await reconciler.handle(raw_body, dict(request.headers))
