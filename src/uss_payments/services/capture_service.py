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

"""Synchronous payment capture initiated by the client app.

Every capture is keyed by the caller's idempotency key. The stored response is
written in the same transaction as the settlement side effects, so a retried
request either replays that response verbatim or, if nothing was stored, runs
again against the "already paid" guard and creates nothing new.
"""

import logging
from typing import Any, Dict, Optional, Union
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db
from uss_payments.config import Settings
from uss_payments.enums import PaymentMethod
from uss_payments.enums import QuotePaymentStatus
from uss_payments.enums import SettlementStatus
from uss_payments.enums import SubscriptionStatus
from uss_payments.exceptions import AuthorizationError
from uss_payments.exceptions import ConflictError
from uss_payments.exceptions import InvalidRequestError
from uss_payments.exceptions import ResourceNotFoundError
from uss_payments.gateway import OrderGateway
from uss_payments.idempotency import IdempotencyStore
from uss_payments.idempotency import compute_request_hash
from uss_payments.ledger import LedgerRepository
from uss_payments.models import CallerIdentity
from uss_payments.models import CaptureRequest
from uss_payments.models import CaptureResponse
from uss_payments.models import PlanPaymentContext
from uss_payments.models import ProviderCaptureRequest
from uss_payments.models import ProviderCaptureResponse
from uss_payments.models import QuotePaymentContext
from uss_payments.models import decode_payment_context
from uss_payments.rate_limit import RateLimiter
from uss_payments.services.settlement import CONFIRMED_QUOTE_STATUSES
from uss_payments.services.settlement import CONFIRMED_SUBSCRIPTION_STATUSES
from uss_payments.services.settlement import PAYABLE_QUOTE_STATUSES
from uss_payments.services.settlement import QuoteSettlement
from uss_payments.services.settlement import Settlement
from uss_payments.services.settlement import SubscriptionSettlement

logger = logging.getLogger(__name__)

CAPTURE_ACTION = "capture"
PROVIDER_CAPTURE_ACTION = "paypal_capture"


class PaymentCaptureService:
  """Service for client-initiated payment captures."""

  def __init__(
      self,
      session: AsyncSession,
      gateway: OrderGateway,
      settings: Settings,
      settlement: Optional[Settlement] = None,
      rate_limiter: Optional[RateLimiter] = None,
  ):
    self.session = session
    self.gateway = gateway
    self.settings = settings
    self.ledger = LedgerRepository(session)
    self.idempotency = IdempotencyStore(session)
    self.settlement = settlement or Settlement(session, settings)
    self.rate_limiter = rate_limiter or RateLimiter(session)

  async def _load_owned_quote(
      self, quote_id: str, caller: CallerIdentity
  ) -> db.FreightQuote:
    quote = await self.ledger.get(db.FreightQuote, quote_id)
    if quote is None:
      raise ResourceNotFoundError("Quote not found")
    client = await self.ledger.find_client_by_user(caller.user_id)
    if client is None or quote.client_id != client.id:
      logger.warning(
          "User %s attempted to capture quote %s they do not own",
          caller.user_id,
          quote_id,
      )
      raise AuthorizationError("You do not have access to this quote")
    return quote

  async def _store_and_commit(
      self,
      idempotency_key: str,
      caller: CallerIdentity,
      request_hash: str,
      response_status: int,
      response: Dict[str, Any],
  ) -> Optional[Dict[str, Any]]:
    """Stores the response with the pending side effects and commits.

    Returns:
      None on success, or the response stored by a concurrent request with
      the same key, in which case this request's side effects were rolled back.
    """
    try:
      await self.idempotency.put(
          idempotency_key, caller.user_id, request_hash, response_status, response
      )
      await self.session.commit()
    except IntegrityError:
      await self.session.rollback()
      stored = await self.idempotency.replay(
          idempotency_key, caller.user_id, request_hash
      )
      if stored is None:
        raise
      logger.info(
          "Idempotency key %s completed concurrently, replaying", idempotency_key
      )
      return stored
    return None

  async def capture(
      self,
      request: CaptureRequest,
      idempotency_key: str,
      caller: CallerIdentity,
  ) -> Dict[str, Any]:
    """Settles a quote with one of the in-app payment methods.

    Args:
      request: Quote, payment method and method token.
      idempotency_key: Client-supplied key collapsing retries.
      caller: The authenticated principal.

    Returns:
      The JSON body of the capture response, identical for every retry with
      the same key.
    """
    request_hash = compute_request_hash(request)
    stored = await self.idempotency.replay(
        idempotency_key, caller.user_id, request_hash
    )
    if stored is not None:
      return stored

    await self.rate_limiter.hit(
        caller.user_id,
        CAPTURE_ACTION,
        self.settings.capture_rate_limit,
        self.settings.capture_rate_window_seconds,
    )

    # Re-validated here: the quote may have changed since the order was made.
    quote = await self._load_owned_quote(request.quote_id, caller)
    if not quote.amount or quote.amount <= 0:
      raise InvalidRequestError("Invalid quote amount")

    settled: Optional[QuoteSettlement] = None
    if quote.payment_status == QuotePaymentStatus.PAID.value:
      response = await self._already_paid_response(quote, request.payment_method)
    elif quote.payment_status == QuotePaymentStatus.FAILED.value:
      raise ConflictError(
          "The last payment for this quote failed; create a new payment",
          code="PAYMENT_NOT_CAPTURABLE",
      )
    elif request.payment_method == PaymentMethod.CARD:
      settled = await self.settlement.mark_quote_paid(
          quote.id, PaymentMethod.CARD.value, f"pi_{uuid.uuid4()}"
      )
      if settled.newly_paid:
        response = self._paid_response(settled, request.payment_method)
      else:
        response = await self._already_paid_response(
            settled.quote, request.payment_method
        )
    elif request.payment_method == PaymentMethod.MOBILE_MONEY:
      response = await self._start_mobile_money(quote)
    else:
      response = await self._defer_to_delivery(quote)

    body = response.model_dump(mode="json")
    stored = await self._store_and_commit(
        idempotency_key, caller, request_hash, 200, body
    )
    if stored is not None:
      return stored

    if settled is not None and settled.newly_paid:
      await self.settlement.notify_quote_paid(settled)
    await self.rate_limiter.reset(caller.user_id, CAPTURE_ACTION)
    return body

  def _paid_response(
      self, settled: QuoteSettlement, method: PaymentMethod
  ) -> CaptureResponse:
    return CaptureResponse(
        quote_id=settled.quote.id,
        payment_status=SettlementStatus.PAID,
        payment_method=method,
        payment_reference=settled.quote.payment_reference,
        shipment_id=settled.shipment.id if settled.shipment else None,
        tracking_number=(
            settled.shipment.tracking_number if settled.shipment else None
        ),
        already_paid=False,
        message="Paiement confirmé. Votre expédition a été créée.",
    )

  async def _already_paid_response(
      self, quote: db.FreightQuote, method: PaymentMethod
  ) -> CaptureResponse:
    shipment = await self.ledger.get(db.Shipment, quote.shipment_id)
    return CaptureResponse(
        quote_id=quote.id,
        payment_status=SettlementStatus.PAID,
        payment_method=method,
        payment_reference=quote.payment_reference,
        shipment_id=shipment.id if shipment else None,
        tracking_number=shipment.tracking_number if shipment else None,
        already_paid=True,
        message="Ce devis a déjà été payé.",
    )

  async def _start_mobile_money(self, quote: db.FreightQuote) -> CaptureResponse:
    """Records a mobile money payment that completes asynchronously."""
    reference = f"mm_{uuid.uuid4()}"
    started = await self.ledger.conditional_update(
        db.FreightQuote,
        quote.id,
        PAYABLE_QUOTE_STATUSES,
        {
            "payment_status": QuotePaymentStatus.PROCESSING.value,
            "payment_provider": PaymentMethod.MOBILE_MONEY.value,
            "payment_reference": reference,
            "updated_at": db.utcnow_iso(),
        },
    )
    if not started:
      quote = await self.ledger.get(db.FreightQuote, quote.id)
      if quote.payment_status == QuotePaymentStatus.PAID.value:
        return await self._already_paid_response(
            quote, PaymentMethod.MOBILE_MONEY
        )
      raise ConflictError(
          f"Quote payment is {quote.payment_status}",
          code="PAYMENT_NOT_CAPTURABLE",
      )
    await self.ledger.record_event(
        "payment_processing",
        "Mobile money payment initiated",
        client_id=quote.client_id,
        quote_id=quote.id,
    )
    return CaptureResponse(
        quote_id=quote.id,
        payment_status=SettlementStatus.PROCESSING,
        payment_method=PaymentMethod.MOBILE_MONEY,
        payment_reference=reference,
        message="Paiement mobile en cours de traitement.",
    )

  async def _defer_to_delivery(self, quote: db.FreightQuote) -> CaptureResponse:
    """Cash on delivery: nothing is settled now and no shipment is created."""
    await self.ledger.record_event(
        "payment_pending",
        "Cash on delivery selected",
        client_id=quote.client_id,
        quote_id=quote.id,
    )
    return CaptureResponse(
        quote_id=quote.id,
        payment_status=SettlementStatus.PENDING,
        payment_method=PaymentMethod.CASH_ON_DELIVERY,
        message="Paiement à la livraison enregistré.",
    )

  async def capture_provider_order(
      self,
      request: ProviderCaptureRequest,
      idempotency_key: str,
      caller: CallerIdentity,
  ) -> Dict[str, Any]:
    """Captures a buyer-approved PayPal order from the payment-success page.

    A completed capture drives the same settlement as the webhook; any other
    provider status marks the quote failed or the subscription cancelled and
    answers with `ok: false`.
    """
    request_hash = compute_request_hash(request)
    stored = await self.idempotency.replay(
        idempotency_key, caller.user_id, request_hash
    )
    if stored is not None:
      return stored

    await self.rate_limiter.hit(
        caller.user_id,
        PROVIDER_CAPTURE_ACTION,
        self.settings.capture_rate_limit,
        self.settings.capture_rate_window_seconds,
    )

    record = await self._resolve_order(request, caller)
    order_id = record.payment_reference
    if isinstance(record, db.FreightQuote):
      if record.payment_status == QuotePaymentStatus.PAID.value:
        return await self._finish_provider_capture(
            idempotency_key,
            caller,
            request_hash,
            await self._quote_result(record, None),
        )
    elif record.status == SubscriptionStatus.ACTIVE.value:
      return await self._finish_provider_capture(
          idempotency_key,
          caller,
          request_hash,
          self._subscription_result(record, None),
      )

    access_token = await self.gateway.get_access_token()
    result = await self.gateway.capture_order(access_token, order_id)
    if result.custom_id:
      self._check_context(decode_payment_context(result.custom_id), record)

    settled: Union[QuoteSettlement, SubscriptionSettlement, None] = None
    if not result.completed:
      logger.warning(
          "PayPal order %s captured with status %s", order_id, result.status
      )
      if isinstance(record, db.FreightQuote):
        await self.settlement.fail_quote_payment(record.id)
      else:
        await self.settlement.cancel_subscription(record.id)
      response = ProviderCaptureResponse(
          ok=False,
          new_status=(
              QuotePaymentStatus.FAILED.value
              if isinstance(record, db.FreightQuote)
              else SubscriptionStatus.CANCELLED.value
          ),
          quote_id=record.id if isinstance(record, db.FreightQuote) else None,
          subscription_id=(
              record.id if isinstance(record, db.Subscription) else None
          ),
          capture_id=result.capture_id,
          message=f"Paiement non complété ({result.status})",
      )
    elif isinstance(record, db.FreightQuote):
      settled = await self.settlement.mark_quote_paid(
          record.id, "paypal", expected=CONFIRMED_QUOTE_STATUSES
      )
      response = await self._quote_result(settled.quote, result.capture_id)
    else:
      settled = await self.settlement.activate_subscription(
          record.id, order_id, expected=CONFIRMED_SUBSCRIPTION_STATUSES
      )
      response = self._subscription_result(
          settled.subscription, result.capture_id
      )

    body = await self._finish_provider_capture(
        idempotency_key, caller, request_hash, response, notify=settled
    )
    return body

  async def _finish_provider_capture(
      self,
      idempotency_key: str,
      caller: CallerIdentity,
      request_hash: str,
      response: ProviderCaptureResponse,
      notify: Union[QuoteSettlement, SubscriptionSettlement, None] = None,
  ) -> Dict[str, Any]:
    body = response.model_dump(mode="json")
    stored = await self._store_and_commit(
        idempotency_key, caller, request_hash, 200 if response.ok else 402, body
    )
    if stored is not None:
      return stored
    if isinstance(notify, QuoteSettlement) and notify.newly_paid:
      await self.settlement.notify_quote_paid(notify)
    elif isinstance(notify, SubscriptionSettlement) and notify.newly_active:
      await self.settlement.notify_subscription_activated(notify)
    if response.ok:
      await self.rate_limiter.reset(caller.user_id, PROVIDER_CAPTURE_ACTION)
    return body

  async def _resolve_order(
      self, request: ProviderCaptureRequest, caller: CallerIdentity
  ) -> Union[db.FreightQuote, db.Subscription]:
    """Finds the caller's local record for the order being captured."""
    if request.order_id:
      quote = await self.ledger.find_quote_by_reference(request.order_id)
      if quote is not None:
        return await self._load_owned_quote(quote.id, caller)
      subscription = await self.ledger.find_subscription_by_reference(
          request.order_id
      )
      if subscription is None:
        raise ResourceNotFoundError("No payment found for this order")
      if subscription.user_id != caller.user_id:
        logger.warning(
            "User %s attempted to capture subscription %s they do not own",
            caller.user_id,
            subscription.id,
        )
        raise AuthorizationError("You do not have access to this subscription")
      return subscription

    quote = await self._load_owned_quote(request.quote_id, caller)
    if not quote.payment_reference:
      raise InvalidRequestError("No PayPal order for this quote")
    return quote

  def _check_context(
      self,
      context: Union[QuotePaymentContext, PlanPaymentContext],
      record: Union[db.FreightQuote, db.Subscription],
  ) -> None:
    if isinstance(context, QuotePaymentContext):
      matches = (
          isinstance(record, db.FreightQuote) and context.quote_id == record.id
      )
    else:
      matches = (
          isinstance(record, db.Subscription)
          and context.subscription_id == record.id
      )
    if not matches:
      logger.error(
          "Payment context %s does not match local record %s", context, record.id
      )
      raise InvalidRequestError("Payment context does not match this order")

  async def _quote_result(
      self, quote: db.FreightQuote, capture_id: Optional[str]
  ) -> ProviderCaptureResponse:
    shipment = await self.ledger.get(db.Shipment, quote.shipment_id)
    return ProviderCaptureResponse(
        ok=True,
        new_status=QuotePaymentStatus.PAID.value,
        quote_id=quote.id,
        capture_id=capture_id,
        shipment_id=shipment.id if shipment else None,
        tracking_number=shipment.tracking_number if shipment else None,
    )

  def _subscription_result(
      self, subscription: db.Subscription, capture_id: Optional[str]
  ) -> ProviderCaptureResponse:
    return ProviderCaptureResponse(
        ok=True,
        new_status=SubscriptionStatus.ACTIVE.value,
        subscription_id=subscription.id,
        capture_id=capture_id,
    )
