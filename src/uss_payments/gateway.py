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

"""Adapter for the PayPal REST API.

`OrderGateway` covers the four provider calls the reconciliation core needs:
the client-credentials token exchange, order creation, order capture and
webhook signature verification. Every failure (transport error, timeout or
non-2xx answer) is raised as `ProviderError` with the provider's text kept for
the logs only.
"""

import dataclasses
import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from uss_payments.config import Settings
from uss_payments.exceptions import ProviderError

logger = logging.getLogger(__name__)

BRAND_NAME = "Universal Shipping Services"

# Headers PayPal signs a webhook delivery with, passed through unmodified.
WEBHOOK_SIGNATURE_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
    "transmission_sig": "paypal-transmission-sig",
}


@dataclasses.dataclass(frozen=True)
class OrderSpec:
  """What to charge for and how to correlate it later."""

  reference_id: str
  amount_minor: int
  currency: str
  description: str
  item_name: str
  item_description: str
  custom_id: str
  return_url: str
  cancel_url: str


@dataclasses.dataclass(frozen=True)
class CreatedOrder:
  order_id: str
  approval_url: Optional[str]


@dataclasses.dataclass(frozen=True)
class CaptureResult:
  status: str
  capture_id: Optional[str]
  custom_id: Optional[str] = None

  @property
  def completed(self) -> bool:
    return self.status == "COMPLETED"


def format_amount(amount_minor: int) -> str:
  """Formats minor units as the decimal string PayPal expects."""
  return f"{amount_minor // 100}.{amount_minor % 100:02d}"


def build_order_payload(spec: OrderSpec) -> Dict[str, Any]:
  value = format_amount(spec.amount_minor)
  currency = spec.currency.upper()
  return {
      "intent": "CAPTURE",
      "purchase_units": [{
          "reference_id": spec.reference_id,
          "description": spec.description,
          "custom_id": spec.custom_id,
          "amount": {
              "currency_code": currency,
              "value": value,
              "breakdown": {
                  "item_total": {"currency_code": currency, "value": value},
              },
          },
          "items": [{
              "name": spec.item_name,
              "description": spec.item_description,
              "unit_amount": {"currency_code": currency, "value": value},
              "quantity": "1",
          }],
      }],
      "application_context": {
          "brand_name": BRAND_NAME,
          "landing_page": "NO_PREFERENCE",
          "user_action": "PAY_NOW",
          "return_url": spec.return_url,
          "cancel_url": spec.cancel_url,
      },
  }


class OrderGateway:
  """PayPal client used by the order, capture and webhook services."""

  def __init__(
      self,
      settings: Settings,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self.settings = settings
    self._transport = transport

  def _client(self, timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=self.settings.paypal_api_url,
        timeout=timeout,
        transport=self._transport,
    )

  async def _request(
      self,
      action: str,
      method: str,
      path: str,
      timeout: Optional[float] = None,
      **kwargs,
  ) -> httpx.Response:
    timeout = timeout or self.settings.provider_timeout_seconds
    try:
      async with self._client(timeout) as client:
        response = await client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
      logger.error("PayPal %s request failed: %s", action, e)
      raise ProviderError(f"{action}: {e}") from e
    if response.is_error:
      logger.error(
          "PayPal %s error (%d): %s",
          action,
          response.status_code,
          response.text,
      )
      raise ProviderError(
          f"{action}: {response.text}", provider_status=response.status_code
      )
    return response

  async def get_access_token(self) -> str:
    """Exchanges the client credentials for a bearer token."""
    if not self.settings.paypal_client_id or not self.settings.paypal_client_secret:
      raise ProviderError(
          f"PayPal {self.settings.paypal_env} credentials not configured"
      )
    response = await self._request(
        "auth",
        "POST",
        "/v1/oauth2/token",
        auth=(
            self.settings.paypal_client_id,
            self.settings.paypal_client_secret,
        ),
        data={"grant_type": "client_credentials"},
    )
    token = response.json().get("access_token")
    if not token:
      raise ProviderError("auth: no access_token in response")
    return token

  async def create_order(self, access_token: str, spec: OrderSpec) -> CreatedOrder:
    """Creates a CAPTURE-intent order and returns its approval link."""
    response = await self._request(
        "create order",
        "POST",
        "/v2/checkout/orders",
        headers={"Authorization": f"Bearer {access_token}"},
        json=build_order_payload(spec),
    )
    order = response.json()
    approval_url = next(
        (
            link.get("href")
            for link in order.get("links") or []
            if link.get("rel") in ("approve", "payer-action")
        ),
        None,
    )
    logger.info("PayPal order created: %s", order.get("id"))
    return CreatedOrder(order_id=order["id"], approval_url=approval_url)

  async def capture_order(self, access_token: str, order_id: str) -> CaptureResult:
    """Captures a buyer-approved order."""
    response = await self._request(
        "capture order",
        "POST",
        f"/v2/checkout/orders/{order_id}/capture",
        timeout=self.settings.capture_timeout_seconds,
        headers={
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        },
    )
    result = response.json()
    capture_id = None
    custom_id = None
    units = result.get("purchase_units") or []
    if units:
      custom_id = units[0].get("custom_id")
      captures = (units[0].get("payments") or {}).get("captures") or []
      if captures:
        capture_id = captures[0].get("id")
        custom_id = custom_id or captures[0].get("custom_id")
    return CaptureResult(
        status=result.get("status", "UNKNOWN"),
        capture_id=capture_id or result.get("id"),
        custom_id=custom_id,
    )

  async def verify_webhook_signature(
      self,
      access_token: str,
      webhook_id: str,
      headers: Mapping[str, str],
      raw_body: bytes,
  ) -> bool:
    """Asks PayPal whether a webhook delivery is authentic.

    An answer other than SUCCESS, including a rejected verification request,
    is treated as a failed verification; transport errors still raise.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    verification = {
        field: lowered.get(header)
        for field, header in WEBHOOK_SIGNATURE_HEADERS.items()
    }
    verification["webhook_id"] = webhook_id
    verification["webhook_event"] = json.loads(raw_body)
    try:
      response = await self._request(
          "verify webhook",
          "POST",
          "/v1/notifications/verify-webhook-signature",
          headers={"Authorization": f"Bearer {access_token}"},
          json=verification,
      )
    except ProviderError as e:
      if e.provider_status is not None and e.provider_status < 500:
        return False
      raise
    return response.json().get("verification_status") == "SUCCESS"
