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

"""State transitions shared by the capture and webhook paths.

Both convergent paths drive quotes and subscriptions through the methods of
`Settlement`, which run inside the caller's transaction and leave the commit
to it. The "already paid / already active" guard is a conditional update: the
first path to land performs the side effects (shipment, audit events,
notifications), the other one re-reads the row and reports a no-op.
"""

import dataclasses
import datetime
import logging
from typing import Callable, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db
from uss_payments.config import Settings
from uss_payments.enums import BillingPeriod
from uss_payments.enums import QuotePaymentStatus
from uss_payments.enums import QuoteStatus
from uss_payments.enums import ShipmentStatus
from uss_payments.enums import SubscriptionStatus
from uss_payments.exceptions import ConflictError
from uss_payments.exceptions import ResourceNotFoundError
from uss_payments.gateway import format_amount
from uss_payments.ledger import LedgerRepository
from uss_payments.notifications import NotificationQueue
from uss_payments.notifications import operator_payment_email
from uss_payments.notifications import quote_paid_email
from uss_payments.notifications import subscription_activated_email
from uss_payments.tracking import generate_tracking_number

logger = logging.getLogger(__name__)

PAYABLE_QUOTE_STATUSES = (
    QuotePaymentStatus.UNSET.value,
    QuotePaymentStatus.PROCESSING.value,
)

# A provider-confirmed capture also settles attempts that were reported failed
# or cancelled before the money arrived.
CONFIRMED_QUOTE_STATUSES = PAYABLE_QUOTE_STATUSES + (
    QuotePaymentStatus.FAILED.value,
)
CONFIRMED_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.PENDING.value,
    SubscriptionStatus.CANCELLED.value,
)


def compute_end_date(
    start_date: datetime.date, billing_period: str
) -> datetime.date:
  """Returns the last covered day for a plan started on `start_date`.

  Month and year steps use relativedelta, which clamps to the end of shorter
  months: 2024-01-31 + 1 month is 2024-02-29 and 2024-02-29 + 1 year is
  2025-02-28. One-time plans get a one-year grace window.
  """
  if billing_period == BillingPeriod.MONTHLY.value:
    return start_date + relativedelta(months=1)
  # Yearly and one-time plans.
  return start_date + relativedelta(years=1)


def utc_today() -> datetime.date:
  return datetime.datetime.now(datetime.timezone.utc).date()


@dataclasses.dataclass
class QuoteSettlement:
  quote: db.FreightQuote
  shipment: Optional[db.Shipment]
  newly_paid: bool


@dataclasses.dataclass
class SubscriptionSettlement:
  subscription: db.Subscription
  plan: db.PricingPlan
  newly_active: bool


class Settlement:
  """Exactly-once transitions for quotes and subscriptions."""

  def __init__(
      self,
      session: AsyncSession,
      settings: Settings,
      today: Callable[[], datetime.date] = utc_today,
  ):
    self.session = session
    self.settings = settings
    self.today = today
    self.ledger = LedgerRepository(session)
    self.notifications = NotificationQueue(session)

  async def mark_quote_paid(
      self,
      quote_id: str,
      payment_provider: str,
      payment_reference: Optional[str] = None,
      expected: Tuple[str, ...] = PAYABLE_QUOTE_STATUSES,
  ) -> QuoteSettlement:
    """Moves a quote to paid and creates its shipment, once.

    Args:
      quote_id: The quote to settle.
      payment_provider: Recorded on the quote and in the audit event.
      payment_reference: Provider reference; the stored one is kept if None.
      expected: Payment statuses the quote may be settled from.

    Raises:
      ResourceNotFoundError: The quote does not exist.
      ConflictError: The quote's payment failed and needs a new order.
    """
    now = db.utcnow_iso()
    patch = {
        "payment_status": QuotePaymentStatus.PAID.value,
        "status": QuoteStatus.ACCEPTED.value,
        "payment_provider": payment_provider,
        "paid_at": now,
        "updated_at": now,
    }
    if payment_reference:
      patch["payment_reference"] = payment_reference

    won = await self.ledger.conditional_update(
        db.FreightQuote, quote_id, expected, patch
    )
    quote = await self.ledger.get(db.FreightQuote, quote_id)
    if quote is None:
      raise ResourceNotFoundError("Quote not found")

    if not won:
      if quote.payment_status == QuotePaymentStatus.PAID.value:
        logger.info("Quote %s already paid, nothing to do", quote_id)
        shipment = await self.ledger.get(db.Shipment, quote.shipment_id)
        return QuoteSettlement(quote, shipment, newly_paid=False)
      raise ConflictError(
          f"Quote payment is {quote.payment_status}; create a new payment",
          code="PAYMENT_NOT_CAPTURABLE",
      )

    shipment = await self.ledger.get(db.Shipment, quote.shipment_id)
    if shipment is None:
      shipment = await self._create_shipment(quote)
      quote.shipment_id = shipment.id

    amount = f"{format_amount(quote.amount or 0)} {quote.currency}"
    await self.ledger.record_event(
        "quote_paid",
        f"Quote paid via {payment_provider}. Amount: {amount}",
        client_id=quote.client_id,
        quote_id=quote.id,
        shipment_id=shipment.id,
    )
    await self.ledger.record_event(
        "shipment_created",
        f"Shipment created with tracking number {shipment.tracking_number}",
        client_id=quote.client_id,
        quote_id=quote.id,
        shipment_id=shipment.id,
    )
    logger.info(
        "Quote %s marked paid, shipment %s (%s)",
        quote.id,
        shipment.id,
        shipment.tracking_number,
    )
    return QuoteSettlement(quote, shipment, newly_paid=True)

  async def _create_shipment(self, quote: db.FreightQuote) -> db.Shipment:
    tracking_number = await generate_tracking_number(
        self.ledger.tracking_number_exists
    )
    shipment = db.Shipment(
        id=db.new_id(),
        client_id=quote.client_id,
        quote_id=quote.id,
        tracking_number=tracking_number,
        current_status=ShipmentStatus.CONFIRMED.value,
        origin_port=quote.origin_port,
        destination_port=quote.destination_port,
        cargo_type=quote.cargo_type,
        created_at=db.utcnow_iso(),
    )
    await self.ledger.insert(shipment)
    return shipment

  async def fail_quote_payment(self, quote_id: str) -> bool:
    """Marks an in-flight quote payment as failed; never touches a paid quote."""
    return await self.ledger.conditional_update(
        db.FreightQuote,
        quote_id,
        PAYABLE_QUOTE_STATUSES,
        {
            "payment_status": QuotePaymentStatus.FAILED.value,
            "updated_at": db.utcnow_iso(),
        },
    )

  async def activate_subscription(
      self,
      subscription_id: str,
      payment_reference: Optional[str],
      payment_provider: str = "paypal",
      expected: Tuple[str, ...] = (SubscriptionStatus.PENDING.value,),
  ) -> SubscriptionSettlement:
    """Activates a pending subscription, once.

    Raises:
      ResourceNotFoundError: The subscription or its plan does not exist.
      ConflictError: The subscription is not in one of the `expected` statuses.
    """
    subscription = await self.ledger.get(db.Subscription, subscription_id)
    if subscription is None:
      raise ResourceNotFoundError("Subscription not found")
    plan = await self.ledger.find_plan(subscription.plan_code)
    if plan is None:
      raise ResourceNotFoundError(f"Plan not found: {subscription.plan_code}")

    start_date = self.today()
    end_date = compute_end_date(start_date, plan.billing_period)
    patch = {
        "status": SubscriptionStatus.ACTIVE.value,
        "is_active": True,
        "start_date": start_date,
        "end_date": end_date,
        "payment_provider": payment_provider,
        "updated_at": db.utcnow_iso(),
    }
    if payment_reference:
      patch["payment_reference"] = payment_reference
    won = await self.ledger.conditional_update(
        db.Subscription, subscription_id, expected, patch
    )
    subscription = await self.ledger.get(db.Subscription, subscription_id)
    if not won:
      if subscription.status == SubscriptionStatus.ACTIVE.value:
        logger.info("Subscription %s already active", subscription_id)
        return SubscriptionSettlement(subscription, plan, newly_active=False)
      raise ConflictError(
          f"Subscription is {subscription.status}", code="SUBSCRIPTION_CLOSED"
      )

    await self.ledger.record_event(
        "subscription_activated",
        f"Subscription activated for plan {plan.name} via {payment_provider}. "
        f"Amount: {format_amount(plan.price or 0)} {plan.currency}",
        user_id=subscription.user_id,
        client_id=subscription.client_id,
        subscription_id=subscription.id,
    )
    logger.info(
        "Subscription %s active until %s", subscription.id, end_date.isoformat()
    )
    return SubscriptionSettlement(subscription, plan, newly_active=True)

  async def cancel_subscription(self, subscription_id: str) -> bool:
    """Cancels a pending subscription; an active one is left alone."""
    return await self.ledger.conditional_update(
        db.Subscription,
        subscription_id,
        SubscriptionStatus.PENDING.value,
        {
            "status": SubscriptionStatus.CANCELLED.value,
            "is_active": False,
            "updated_at": db.utcnow_iso(),
        },
    )

  async def notify_quote_paid(self, settlement: QuoteSettlement) -> None:
    """Queues the client and operator emails after a committed payment."""
    quote = settlement.quote
    try:
      client = await self.ledger.get(db.Client, quote.client_id)
    except SQLAlchemyError as e:
      logger.error("Could not load client for quote %s: %s", quote.id, e)
      client = None
    client_email = client.email if client else None

    # Both messages are rendered up front: a failed enqueue rolls the session
    # back and expires the loaded rows.
    client_subject, client_body = quote_paid_email(quote, settlement.shipment)
    client_metadata = {
        "quote_id": quote.id,
        "shipment_id": settlement.shipment.id if settlement.shipment else None,
        "amount": quote.amount,
        "currency": quote.currency,
    }
    operator_subject, operator_body = operator_payment_email(
        quote, client_email, quote.payment_reference
    )
    operator_metadata = {"quote_id": quote.id, "client_email": client_email}

    await self.notifications.enqueue(
        client_email,
        "quote_payment_received",
        client_subject,
        client_body,
        client_metadata,
    )
    await self.notifications.enqueue(
        self.settings.operator_email,
        "operator_payment_received",
        operator_subject,
        operator_body,
        operator_metadata,
    )

  async def notify_subscription_activated(
      self, settlement: SubscriptionSettlement
  ) -> None:
    subscription = settlement.subscription
    try:
      client = await self.ledger.get(db.Client, subscription.client_id)
    except SQLAlchemyError as e:
      logger.error(
          "Could not load client for subscription %s: %s", subscription.id, e
      )
      client = None

    subject, body = subscription_activated_email(
        settlement.plan, subscription.start_date, subscription.end_date
    )
    await self.notifications.enqueue(
        client.email if client else None,
        "subscription_activated",
        subject,
        body,
        {
            "plan_code": settlement.plan.code,
            "plan_name": settlement.plan.name,
            "amount": settlement.plan.price,
            "currency": settlement.plan.currency,
            "billing_period": settlement.plan.billing_period,
        },
    )
