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

"""Event-driven reconciliation of PayPal webhook deliveries.

Each delivery goes through the same steps:

1. Verify the signature (skipped with a warning when no webhook id is set).
2. Append the raw event to the payment log and commit, before any business
   logic runs.
3. Dispatch on the event type and append the outcome to the log.
4. Acknowledge. Data problems (bad custom data, unknown record) are logged as
   `unprocessable` and still acknowledged so PayPal stops retrying. Any other
   failure is logged as `error` before it propagates; database failures
   surface as 503 so PayPal retries.

Redeliveries are safe: every transition re-checks the current status with a
conditional update, and an event id already logged as processed is answered
as a duplicate without dispatch.
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

from sqlalchemy import exists
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db
from uss_payments.config import Settings
from uss_payments.enums import WebhookEventType
from uss_payments.enums import WebhookLogStatus
from uss_payments.enums import WebhookOutcome
from uss_payments.exceptions import ConflictError
from uss_payments.exceptions import InfrastructureError
from uss_payments.exceptions import InvalidRequestError
from uss_payments.exceptions import PaymentServiceError
from uss_payments.exceptions import ResourceNotFoundError
from uss_payments.exceptions import WebhookSignatureError
from uss_payments.gateway import OrderGateway
from uss_payments.ledger import LedgerRepository
from uss_payments.models import PlanPaymentContext
from uss_payments.models import QuotePaymentContext
from uss_payments.models import WebhookAck
from uss_payments.models import decode_payment_context
from uss_payments.services.settlement import CONFIRMED_QUOTE_STATUSES
from uss_payments.services.settlement import CONFIRMED_SUBSCRIPTION_STATUSES
from uss_payments.services.settlement import QuoteSettlement
from uss_payments.services.settlement import Settlement

logger = logging.getLogger(__name__)

SETTLING_EVENTS = frozenset({
    WebhookEventType.ORDER_APPROVED.value,
    WebhookEventType.CAPTURE_COMPLETED.value,
})
FAILING_EVENTS = frozenset({
    WebhookEventType.CAPTURE_DENIED.value,
    WebhookEventType.CAPTURE_DECLINED.value,
})


def _text(value: Any) -> Optional[str]:
  """Normalizes an event field that should be a string."""
  if value is None or isinstance(value, str):
    return value
  return json.dumps(value)


def extract_custom_id(resource: Dict[str, Any]) -> Optional[str]:
  """Reads the custom data from a capture or an order resource."""
  if resource.get("custom_id"):
    return resource["custom_id"]
  units = resource.get("purchase_units") or []
  if units and isinstance(units[0], dict):
    return units[0].get("custom_id")
  return None


def extract_order_id(resource: Dict[str, Any], event_type: str) -> Optional[str]:
  """Returns the PayPal order id the resource belongs to, if known."""
  if event_type == WebhookEventType.ORDER_APPROVED.value:
    return resource.get("id")
  related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
  return related.get("order_id")


class WebhookReconciler:
  """Applies PayPal webhook events to quotes and subscriptions."""

  def __init__(
      self,
      session: AsyncSession,
      gateway: OrderGateway,
      settings: Settings,
      settlement: Optional[Settlement] = None,
  ):
    self.session = session
    self.gateway = gateway
    self.settings = settings
    self.ledger = LedgerRepository(session)
    self.settlement = settlement or Settlement(session, settings)

  async def handle(
      self, raw_body: bytes, headers: Mapping[str, str]
  ) -> WebhookAck:
    """Processes one webhook delivery.

    Args:
      raw_body: The request body exactly as received.
      headers: The request headers, passed to signature verification as is.

    Returns:
      The acknowledgment for the provider.

    Raises:
      InvalidRequestError: The body is not a JSON object.
      WebhookSignatureError: Signature verification is enabled and failed.
      InfrastructureError: The database failed; the provider should retry.
      PaymentServiceError: Processing failed after the event was logged; an
        `error` row is appended first.
    """
    try:
      event = json.loads(raw_body)
    except ValueError as e:
      raise InvalidRequestError("Malformed webhook payload") from e
    if not isinstance(event, dict):
      raise InvalidRequestError("Malformed webhook payload")

    event_id = _text(event.get("id"))
    event_type = _text(event.get("event_type")) or "UNKNOWN"
    await self._verify(raw_body, headers, event_id)
    logger.info("PayPal webhook received: %s (%s)", event_type, event_id)

    try:
      await self._append_log(
          event_id, event_type, WebhookLogStatus.RECEIVED, payload=event
      )
      await self.session.commit()
      return await self._dispatch(event, event_id, event_type)
    except SQLAlchemyError as e:
      await self._fail_delivery(event_id, event_type, str(e))
      raise InfrastructureError(f"webhook {event_id}: {e}") from e
    except PaymentServiceError as e:
      await self._fail_delivery(
          event_id, event_type, getattr(e, "detail", None) or e.message
      )
      raise
    except Exception as e:  # pylint: disable=broad-exception-caught
      await self._fail_delivery(event_id, event_type, repr(e))
      raise

  async def _fail_delivery(
      self, event_id: Optional[str], event_type: str, message: str
  ) -> None:
    """Rolls back and records the failure before any response is sent."""
    await self.session.rollback()
    logger.error(
        "Failure processing webhook %s (%s): %s", event_id, event_type, message
    )
    await self._log_error(event_id, event_type, message)

  async def _verify(
      self, raw_body: bytes, headers: Mapping[str, str], event_id: Optional[str]
  ) -> None:
    if not self.settings.webhook_verification_enabled:
      logger.warning(
          "PayPal webhook id not configured, skipping signature verification"
      )
      return
    access_token = await self.gateway.get_access_token()
    valid = await self.gateway.verify_webhook_signature(
        access_token, self.settings.paypal_webhook_id, headers, raw_body
    )
    if not valid:
      logger.warning("Webhook signature verification failed for %s", event_id)
      raise WebhookSignatureError()

  async def _append_log(
      self,
      event_id: Optional[str],
      event_type: str,
      status: WebhookLogStatus,
      error_message: Optional[str] = None,
      payload: Optional[Dict[str, Any]] = None,
  ) -> None:
    self.session.add(
        db.WebhookEventLog(
            event_id=event_id,
            event_type=event_type,
            status=status.value,
            payload=payload,
            error_message=error_message,
            created_at=db.utcnow_iso(),
        )
    )
    await self.session.flush()

  async def _log_error(
      self, event_id: Optional[str], event_type: str, message: str
  ) -> None:
    try:
      await self._append_log(
          event_id, event_type, WebhookLogStatus.ERROR, error_message=message
      )
      await self.session.commit()
    except SQLAlchemyError as e:
      await self.session.rollback()
      logger.error("Could not log webhook error for %s: %s", event_id, e)

  async def _already_processed(self, event_id: str) -> bool:
    result = await self.session.execute(
        select(
            exists()
            .where(db.WebhookEventLog.event_id == event_id)
            .where(
                db.WebhookEventLog.status == WebhookLogStatus.PROCESSED.value
            )
        )
    )
    return bool(result.scalar())

  async def _finish(
      self,
      event_id: Optional[str],
      event_type: str,
      outcome: WebhookOutcome,
      detail: Optional[str] = None,
  ) -> WebhookAck:
    await self._append_log(
        event_id, event_type, WebhookLogStatus(outcome.value), error_message=detail
    )
    await self.session.commit()
    return WebhookAck(event_id=event_id, outcome=outcome, detail=detail)

  async def _unprocessable(
      self, event_id: Optional[str], event_type: str, reason: str
  ) -> WebhookAck:
    await self.session.rollback()
    logger.warning(
        "Webhook %s (%s) unprocessable: %s", event_id, event_type, reason
    )
    return await self._finish(
        event_id, event_type, WebhookOutcome.UNPROCESSABLE, reason
    )

  async def _dispatch(
      self, event: Dict[str, Any], event_id: Optional[str], event_type: str
  ) -> WebhookAck:
    if event_id and await self._already_processed(event_id):
      logger.info("Webhook %s already processed, ignoring redelivery", event_id)
      return await self._finish(event_id, event_type, WebhookOutcome.DUPLICATE)

    if event_type not in SETTLING_EVENTS and event_type not in FAILING_EVENTS:
      logger.info("Unhandled webhook event type: %s", event_type)
      return await self._finish(event_id, event_type, WebhookOutcome.UNHANDLED)

    resource = event.get("resource")
    if not isinstance(resource, dict):
      return await self._unprocessable(
          event_id, event_type, "Event has no resource"
      )
    try:
      context = decode_payment_context(extract_custom_id(resource))
    except InvalidRequestError as e:
      return await self._unprocessable(event_id, event_type, e.message)

    if event_type in SETTLING_EVENTS:
      return await self._settle(
          context, extract_order_id(resource, event_type), event_id, event_type
      )
    return await self._fail(context, event_id, event_type)

  async def _settle(
      self,
      context: Union[QuotePaymentContext, PlanPaymentContext],
      order_id: Optional[str],
      event_id: Optional[str],
      event_type: str,
  ) -> WebhookAck:
    try:
      if isinstance(context, QuotePaymentContext):
        settled = await self.settlement.mark_quote_paid(
            context.quote_id,
            "paypal",
            order_id,
            expected=CONFIRMED_QUOTE_STATUSES,
        )
        changed = settled.newly_paid
        detail = f"quote {context.quote_id} paid"
      else:
        settled = await self.settlement.activate_subscription(
            context.subscription_id,
            order_id,
            expected=CONFIRMED_SUBSCRIPTION_STATUSES,
        )
        changed = settled.newly_active
        detail = f"subscription {context.subscription_id} active"
    except (ResourceNotFoundError, ConflictError) as e:
      return await self._unprocessable(event_id, event_type, e.message)

    if not changed:
      detail += " (already settled)"
    ack = await self._finish(
        event_id, event_type, WebhookOutcome.PROCESSED, detail
    )
    if changed:
      if isinstance(settled, QuoteSettlement):
        await self.settlement.notify_quote_paid(settled)
      else:
        await self.settlement.notify_subscription_activated(settled)
    return ack

  async def _fail(
      self,
      context: Union[QuotePaymentContext, PlanPaymentContext],
      event_id: Optional[str],
      event_type: str,
  ) -> WebhookAck:
    if isinstance(context, QuotePaymentContext):
      if await self.ledger.get(db.FreightQuote, context.quote_id) is None:
        return await self._unprocessable(
            event_id, event_type, f"Quote not found: {context.quote_id}"
        )
      changed = await self.settlement.fail_quote_payment(context.quote_id)
      detail = f"quote {context.quote_id} failed"
    else:
      if (
          await self.ledger.get(db.Subscription, context.subscription_id)
          is None
      ):
        return await self._unprocessable(
            event_id,
            event_type,
            f"Subscription not found: {context.subscription_id}",
        )
      changed = await self.settlement.cancel_subscription(
          context.subscription_id
      )
      detail = f"subscription {context.subscription_id} cancelled"
    if not changed:
      detail = "no change, record already settled"
    logger.info("Webhook %s: %s", event_id, detail)
    return await self._finish(
        event_id, event_type, WebhookOutcome.PROCESSED, detail
    )
