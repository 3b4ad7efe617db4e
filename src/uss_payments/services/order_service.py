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

"""Creation of provider payment orders for quotes and pricing plans.

For a freight quote the local record is reserved (`payment_status` moves to
`processing`) and committed before PayPal is contacted, so a second request
for the same quote loses the conditional update and is rejected. For a plan,
a fresh `pending` subscription is inserted first and doubles as the anchor the
webhook and capture paths later activate.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db
from uss_payments.config import Settings
from uss_payments.enums import PaymentContextType
from uss_payments.enums import QuotePaymentStatus
from uss_payments.enums import SubscriptionStatus
from uss_payments.exceptions import AuthorizationError
from uss_payments.exceptions import ConflictError
from uss_payments.exceptions import InvalidRequestError
from uss_payments.exceptions import ProviderError
from uss_payments.exceptions import ResourceNotFoundError
from uss_payments.gateway import OrderGateway
from uss_payments.gateway import OrderSpec
from uss_payments.ledger import LedgerRepository
from uss_payments.models import CallerIdentity
from uss_payments.models import CancelOrderResponse
from uss_payments.models import CreateOrderRequest
from uss_payments.models import CreateOrderResponse
from uss_payments.models import PlanPaymentContext
from uss_payments.models import QuotePaymentContext
from uss_payments.models import encode_payment_context
from uss_payments.notifications import short_ref

logger = logging.getLogger(__name__)

# A quote may (re)enter the payment flow from these states only.
RESERVABLE_QUOTE_STATUSES = (
    QuotePaymentStatus.UNSET.value,
    QuotePaymentStatus.FAILED.value,
)


class PaymentOrderService:
  """Service for starting provider payments."""

  def __init__(
      self,
      session: AsyncSession,
      gateway: OrderGateway,
      settings: Settings,
  ):
    self.session = session
    self.gateway = gateway
    self.settings = settings
    self.ledger = LedgerRepository(session)

  async def create_order(
      self,
      request: CreateOrderRequest,
      caller: CallerIdentity,
      origin: Optional[str] = None,
  ) -> CreateOrderResponse:
    """Creates a PayPal order for a quote or a plan.

    Args:
      request: What the caller wants to pay for.
      caller: The authenticated principal.
      origin: Base URL of the calling app, for the return/cancel redirects.

    Returns:
      The provider order id and the buyer approval URL.
    """
    base_url = (origin or self.settings.app_base_url).rstrip("/")
    if request.context == PaymentContextType.FREIGHT_QUOTE:
      return await self._create_quote_order(request.quote_id, caller, base_url)
    return await self._create_plan_order(request.plan_code, caller, base_url)

  async def _load_owned_quote(
      self, quote_id: str, caller: CallerIdentity
  ) -> db.FreightQuote:
    quote = await self.ledger.get(db.FreightQuote, quote_id)
    if quote is None:
      raise ResourceNotFoundError("Quote not found")
    client = await self.ledger.find_client_by_user(caller.user_id)
    if client is None or quote.client_id != client.id:
      logger.warning(
          "User %s attempted to pay quote %s they do not own",
          caller.user_id,
          quote_id,
      )
      raise AuthorizationError("You do not have access to this quote")
    return quote

  def _reject_unreservable(self, quote: db.FreightQuote) -> None:
    if quote.payment_status == QuotePaymentStatus.PAID.value:
      raise ConflictError("This quote has already been paid", code="ALREADY_PAID")
    if quote.payment_status == QuotePaymentStatus.PROCESSING.value:
      raise ConflictError(
          "A payment for this quote is already in progress",
          code="PAYMENT_IN_PROGRESS",
      )

  async def _create_quote_order(
      self, quote_id: str, caller: CallerIdentity, base_url: str
  ) -> CreateOrderResponse:
    quote = await self._load_owned_quote(quote_id, caller)
    if not quote.amount or quote.amount <= 0:
      raise InvalidRequestError("Invalid quote amount")
    self._reject_unreservable(quote)

    previous_status = quote.payment_status
    reserved = await self.ledger.conditional_update(
        db.FreightQuote,
        quote.id,
        RESERVABLE_QUOTE_STATUSES,
        {
            "payment_status": QuotePaymentStatus.PROCESSING.value,
            "updated_at": db.utcnow_iso(),
        },
    )
    await self.session.commit()
    if not reserved:
      quote = await self.ledger.get(db.FreightQuote, quote.id)
      self._reject_unreservable(quote)
      raise ConflictError(
          f"Quote payment is {quote.payment_status}", code="PAYMENT_IN_PROGRESS"
      )

    spec = OrderSpec(
        reference_id=quote.id,
        amount_minor=quote.amount,
        currency=quote.currency or "EUR",
        description=(
            f"Devis #{short_ref(quote.id)} – Universal Shipping Services"
        ),
        item_name=f"Fret: {quote.cargo_type or 'N/A'}",
        item_description=(
            f"{quote.origin_port or 'N/A'} → {quote.destination_port or 'N/A'}"
        ),
        custom_id=encode_payment_context(QuotePaymentContext(quote_id=quote.id)),
        return_url=(
            f"{base_url}/payment-success?context=freight_quote"
            f"&quote_id={quote.id}"
        ),
        cancel_url=(
            f"{base_url}/payment-cancel?context=freight_quote"
            f"&quote_id={quote.id}"
        ),
    )
    try:
      access_token = await self.gateway.get_access_token()
      order = await self.gateway.create_order(access_token, spec)
    except ProviderError:
      # Release the reservation so the client can try again.
      await self.ledger.conditional_update(
          db.FreightQuote,
          quote.id,
          QuotePaymentStatus.PROCESSING.value,
          {"payment_status": previous_status, "updated_at": db.utcnow_iso()},
      )
      await self.session.commit()
      logger.error("Order creation failed for quote %s", quote.id)
      raise

    await self.ledger.update(
        db.FreightQuote,
        quote.id,
        {
            "payment_provider": "paypal",
            "payment_reference": order.order_id,
            "updated_at": db.utcnow_iso(),
        },
    )
    await self.ledger.record_event(
        "payment_order_created",
        f"PayPal order {order.order_id} created for quote",
        user_id=caller.user_id,
        client_id=quote.client_id,
        quote_id=quote.id,
    )
    await self.session.commit()
    logger.info("PayPal order %s created for quote %s", order.order_id, quote.id)
    return CreateOrderResponse(
        order_id=order.order_id, approval_url=order.approval_url
    )

  async def _create_plan_order(
      self, plan_code: str, caller: CallerIdentity, base_url: str
  ) -> CreateOrderResponse:
    plan = await self.ledger.find_active_plan(plan_code)
    if plan is None:
      raise ResourceNotFoundError(f"Plan not found or inactive: {plan_code}")
    if not plan.price or plan.price <= 0:
      raise InvalidRequestError("Invalid plan price")

    client = await self.ledger.find_client_by_user(caller.user_id)
    subscription = db.Subscription(
        id=db.new_id(),
        user_id=caller.user_id,
        client_id=client.id if client else None,
        plan_code=plan.code,
        status=SubscriptionStatus.PENDING.value,
        is_active=False,
        updated_at=db.utcnow_iso(),
    )
    await self.ledger.insert(subscription)
    await self.session.commit()

    spec = OrderSpec(
        reference_id=subscription.id,
        amount_minor=plan.price,
        currency=plan.currency or "EUR",
        description=plan.name,
        item_name=plan.name,
        item_description=plan.description or "",
        custom_id=encode_payment_context(
            PlanPaymentContext(
                subscription_id=subscription.id, plan_code=plan.code
            )
        ),
        return_url=(
            f"{base_url}/payment-success?context=pricing_plan"
            f"&subscription_id={subscription.id}"
        ),
        cancel_url=f"{base_url}/payment-cancel?context=pricing_plan",
    )
    # A provider failure leaves the pending subscription behind; it is never
    # activated without a matching capture.
    access_token = await self.gateway.get_access_token()
    order = await self.gateway.create_order(access_token, spec)

    await self.ledger.update(
        db.Subscription,
        subscription.id,
        {
            "payment_provider": "paypal",
            "payment_reference": order.order_id,
            "updated_at": db.utcnow_iso(),
        },
    )
    await self.ledger.record_event(
        "payment_order_created",
        f"PayPal order {order.order_id} created for plan {plan.code}",
        user_id=caller.user_id,
        client_id=subscription.client_id,
        subscription_id=subscription.id,
    )
    await self.session.commit()
    logger.info(
        "PayPal order %s created for subscription %s",
        order.order_id,
        subscription.id,
    )
    return CreateOrderResponse(
        order_id=order.order_id, approval_url=order.approval_url
    )

  async def cancel_order(
      self, quote_id: str, caller: CallerIdentity
  ) -> CancelOrderResponse:
    """Releases an abandoned `processing` reservation back to `unset`.

    Called when the buyer returns through the cancel URL. A quote that was
    paid in the meantime is left untouched.
    """
    quote = await self._load_owned_quote(quote_id, caller)
    released = await self.ledger.conditional_update(
        db.FreightQuote,
        quote.id,
        QuotePaymentStatus.PROCESSING.value,
        {
            "payment_status": QuotePaymentStatus.UNSET.value,
            "updated_at": db.utcnow_iso(),
        },
    )
    if released:
      await self.ledger.record_event(
          "payment_cancelled",
          "Payment cancelled by the client",
          user_id=caller.user_id,
          client_id=quote.client_id,
          quote_id=quote.id,
      )
    await self.session.commit()
    quote = await self.ledger.get(db.FreightQuote, quote.id)
    return CancelOrderResponse(
        quote_id=quote.id, payment_status=quote.payment_status
    )
