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

"""Request, response and metadata models for the USS payment service.

The payment context embedded in a provider order is a tagged union: it is
built once when the order is created, serialized into the order's custom data,
and decoded back into the same types on both the synchronous capture path and
the webhook path.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import ValidationError
from pydantic import model_validator

from uss_payments.enums import PaymentContextType
from uss_payments.enums import PaymentMethod
from uss_payments.enums import SettlementStatus
from uss_payments.enums import WebhookOutcome
from uss_payments.exceptions import InvalidRequestError

# PayPal rejects purchase units whose custom_id exceeds this length.
MAX_CUSTOM_ID_LENGTH = 127


class CallerIdentity(BaseModel):
  """Authenticated principal forwarded by the platform's auth gateway."""

  user_id: str
  email: Optional[str] = None


class QuotePaymentContext(BaseModel):
  kind: Literal["quote"] = "quote"
  quote_id: str


class PlanPaymentContext(BaseModel):
  kind: Literal["plan"] = "plan"
  subscription_id: str
  plan_code: str


PaymentContext = Annotated[
    Union[QuotePaymentContext, PlanPaymentContext],
    Field(discriminator="kind"),
]

_PAYMENT_CONTEXT_ADAPTER = TypeAdapter(PaymentContext)


def encode_payment_context(
    context: Union[QuotePaymentContext, PlanPaymentContext],
) -> str:
  """Serializes a payment context for the provider's custom data field."""
  encoded = context.model_dump_json()
  if len(encoded) > MAX_CUSTOM_ID_LENGTH:
    raise ValueError(
        f"Payment context too long for provider custom data: {len(encoded)}"
    )
  return encoded


def decode_payment_context(
    raw: Optional[str],
) -> Union[QuotePaymentContext, PlanPaymentContext]:
  """Parses custom data back into a payment context.

  Raises:
    InvalidRequestError: The data is missing, not JSON, or has an unknown tag.
  """
  if not raw:
    raise InvalidRequestError("No payment context in provider order")
  try:
    return _PAYMENT_CONTEXT_ADAPTER.validate_json(raw)
  except ValidationError as e:
    raise InvalidRequestError(f"Invalid payment context: {e}") from e


# --- Client requests ---


class CreateOrderRequest(BaseModel):
  context: PaymentContextType
  quote_id: Optional[str] = None
  plan_code: Optional[str] = None

  @model_validator(mode="after")
  def _check_target(self) -> "CreateOrderRequest":
    if self.context == PaymentContextType.FREIGHT_QUOTE and not self.quote_id:
      raise ValueError("quote_id is required for freight_quote payments")
    if self.context == PaymentContextType.PRICING_PLAN and not self.plan_code:
      raise ValueError("plan_code is required for pricing_plan payments")
    return self


class CaptureRequest(BaseModel):
  quote_id: str
  payment_method: PaymentMethod
  payment_token: str


class ProviderCaptureRequest(BaseModel):
  order_id: Optional[str] = None
  quote_id: Optional[str] = None

  @model_validator(mode="after")
  def _check_target(self) -> "ProviderCaptureRequest":
    if not self.order_id and not self.quote_id:
      raise ValueError("Missing quote_id or order_id")
    return self


# --- Responses ---


class CreateOrderResponse(BaseModel):
  order_id: str
  approval_url: Optional[str] = None


class CancelOrderResponse(BaseModel):
  quote_id: str
  payment_status: str


class CaptureResponse(BaseModel):
  quote_id: str
  payment_status: SettlementStatus
  payment_method: PaymentMethod
  payment_reference: Optional[str] = None
  shipment_id: Optional[str] = None
  tracking_number: Optional[str] = None
  already_paid: bool = False
  message: Optional[str] = None


class ProviderCaptureResponse(BaseModel):
  ok: bool
  new_status: str
  quote_id: Optional[str] = None
  subscription_id: Optional[str] = None
  capture_id: Optional[str] = None
  shipment_id: Optional[str] = None
  tracking_number: Optional[str] = None
  message: Optional[str] = None


class WebhookAck(BaseModel):
  received: bool = True
  event_id: Optional[str] = None
  outcome: WebhookOutcome
  detail: Optional[str] = None


class TrackingResponse(BaseModel):
  """Public-safe view of a shipment."""

  tracking_number: str
  status: str
  origin: Optional[str] = None
  destination: Optional[str] = None
  created_at: Optional[str] = None


class HealthResponse(BaseModel):
  status: Literal["ok", "degraded"]
  version: str
  database: bool
  provider_configured: bool
  webhook_verification: bool
