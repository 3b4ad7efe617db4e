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

"""Tests for WebhookReconciler."""

import asyncio

from absl.testing import absltest
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from uss_payments import db
from uss_payments import testing
from uss_payments.enums import WebhookOutcome
from uss_payments.exceptions import InfrastructureError
from uss_payments.exceptions import InvalidRequestError
from uss_payments.exceptions import WebhookSignatureError
from uss_payments.models import CallerIdentity
from uss_payments.models import CaptureRequest
from uss_payments.models import CreateOrderRequest
from uss_payments.models import ProviderCaptureRequest
from uss_payments.services.capture_service import PaymentCaptureService
from uss_payments.services.order_service import PaymentOrderService
from uss_payments.services.settlement import Settlement
from uss_payments.services.webhook_reconciler import WebhookReconciler
from uss_payments.services.webhook_reconciler import extract_custom_id
from uss_payments.services.webhook_reconciler import extract_order_id

COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
DENIED = "PAYMENT.CAPTURE.DENIED"
DECLINED = "PAYMENT.CAPTURE.DECLINED"
CALLER = CallerIdentity(user_id=testing.USER_ID, email=testing.USER_EMAIL)


class BrokenSettlement(Settlement):
  """Settlement whose database goes away mid-transition."""

  async def mark_quote_paid(self, *args, **kwargs):
    raise OperationalError(
        "UPDATE freight_quotes", {}, Exception("disk I/O error")
    )


class ExhaustedSettlement(Settlement):
  """Settlement that cannot allocate a tracking number."""

  async def mark_quote_paid(self, *args, **kwargs):
    raise InfrastructureError("could not allocate a unique tracking number")


class TimedOutSettlement(Settlement):
  """Settlement whose connection pool is exhausted."""

  async def mark_quote_paid(self, *args, **kwargs):
    raise PoolTimeoutError("QueuePool limit reached")


class CrashingSettlement(Settlement):

  async def mark_quote_paid(self, *args, **kwargs):
    raise RuntimeError("unexpected")


class ExtractTest(absltest.TestCase):

  def test_custom_id_from_capture_and_order(self):
    self.assertEqual(extract_custom_id({"custom_id": "a"}), "a")
    self.assertEqual(
        extract_custom_id({"purchase_units": [{"custom_id": "b"}]}), "b"
    )
    self.assertIsNone(extract_custom_id({"purchase_units": []}))

  def test_order_id(self):
    self.assertEqual(
        extract_order_id({"id": "ORDER-9"}, "CHECKOUT.ORDER.APPROVED"),
        "ORDER-9",
    )
    resource = testing.capture_event(COMPLETED, "x", "ORDER-3")["resource"]
    self.assertEqual(extract_order_id(resource, COMPLETED), "ORDER-3")
    self.assertIsNone(extract_order_id({"id": "CAPTURE-1"}, COMPLETED))


class WebhookReconcilerTest(testing.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.client_id = self.seed_client()

  async def _handle(self, event, settlement_cls=None, headers=None):
    async with self.manager.session_factory() as session:
      settlement = (
          settlement_cls(session, self.settings) if settlement_cls else None
      )
      reconciler = WebhookReconciler(
          session,
          self.paypal.gateway(self.settings),
          self.settings,
          settlement=settlement,
      )
      raw = event if isinstance(event, bytes) else testing.encode_event(event)
      return await reconciler.handle(raw, headers or {})

  def _log_statuses(self):
    return [r.status for r in self.run_async(self.rows(db.WebhookEventLog))]

  def _processing_quote(self):
    return self.seed_quote(
        self.client_id, payment_status="processing", payment_reference="ORDER-1"
    )

  def test_capture_completed_pays_quote(self):
    quote_id = self._processing_quote()
    event = testing.capture_event(COMPLETED, testing.quote_custom_id(quote_id))

    ack = self.run_async(self._handle(event))

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    self.assertEqual(ack.event_id, event["id"])
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "paid")
    self.assertEqual(quote.payment_provider, "paypal")
    self.assertIsNotNone(quote.shipment_id)
    self.assertEqual(self._log_statuses(), ["received", "processed"])
    emails = self.run_async(self.rows(db.EmailNotification))
    self.assertCountEqual(
        [(e.email_type, e.recipient_email) for e in emails],
        [
            ("quote_payment_received", testing.USER_EMAIL),
            ("operator_payment_received", testing.OPERATOR_EMAIL),
        ],
    )

  def test_redelivery_is_duplicate(self):
    quote_id = self._processing_quote()
    event = testing.capture_event(COMPLETED, testing.quote_custom_id(quote_id))

    self.run_async(self._handle(event))
    ack = self.run_async(self._handle(event))

    self.assertEqual(ack.outcome, WebhookOutcome.DUPLICATE)
    self.assertEqual(self.run_async(self.count(db.Shipment)), 1)
    self.assertEqual(self.run_async(self.count(db.EmailNotification)), 2)
    self.assertEqual(
        self._log_statuses(), ["received", "processed", "received", "duplicate"]
    )

  def test_second_event_for_paid_quote_is_noop(self):
    quote_id = self._processing_quote()
    custom_id = testing.quote_custom_id(quote_id)

    self.run_async(self._handle(testing.order_approved_event(custom_id)))
    ack = self.run_async(self._handle(testing.capture_event(COMPLETED, custom_id)))

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    self.assertIn("already settled", ack.detail)
    self.assertEqual(self.run_async(self.count(db.Shipment)), 1)

  def test_signature_failure_rejects_without_logging(self):
    self.settings = testing.make_settings(paypal_webhook_id="WH-ID")
    self.paypal.verification_status = "FAILURE"
    quote_id = self._processing_quote()
    event = testing.capture_event(COMPLETED, testing.quote_custom_id(quote_id))

    with self.assertRaises(WebhookSignatureError):
      self.run_async(self._handle(event))

    self.assertEqual(self.run_async(self.count(db.WebhookEventLog)), 0)
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "processing")

  def test_verified_signature(self):
    self.settings = testing.make_settings(paypal_webhook_id="WH-ID")
    quote_id = self._processing_quote()
    event = testing.capture_event(COMPLETED, testing.quote_custom_id(quote_id))

    ack = self.run_async(
        self._handle(event, headers={"paypal-transmission-id": "t-1"})
    )

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    self.assertIn(
        "/v1/notifications/verify-webhook-signature", self.paypal.paths()
    )

  def test_malformed_body(self):
    for raw in (b"{not json", b"[1, 2]"):
      with self.subTest(raw=raw):
        with self.assertRaises(InvalidRequestError):
          self.run_async(self._handle(raw))
    self.assertEqual(self.run_async(self.count(db.WebhookEventLog)), 0)

  def test_unhandled_event_type(self):
    event = testing.capture_event("PAYMENT.CAPTURE.REFUNDED", "ignored")
    ack = self.run_async(self._handle(event))
    self.assertEqual(ack.outcome, WebhookOutcome.UNHANDLED)
    self.assertEqual(self._log_statuses(), ["received", "unhandled"])

  def test_unprocessable_events_are_acknowledged(self):
    cases = {
        "missing custom_id": testing.capture_event(COMPLETED, None),
        "not json": testing.capture_event(COMPLETED, "quote-123"),
        "unknown kind": testing.capture_event(
            COMPLETED, '{"kind":"refund","quote_id":"q"}'
        ),
        "unknown quote": testing.capture_event(
            COMPLETED, testing.quote_custom_id("missing")
        ),
        "unknown subscription": testing.capture_event(
            DENIED, testing.plan_custom_id("missing", "pro")
        ),
    }
    for name, event in cases.items():
      with self.subTest(name):
        ack = self.run_async(self._handle(event))
        self.assertEqual(ack.outcome, WebhookOutcome.UNPROCESSABLE)
        self.assertTrue(ack.detail)
    self.assertEqual(self.run_async(self.count(db.Shipment)), 0)

  def test_no_resource(self):
    event = {"id": "WH-1", "event_type": COMPLETED}
    ack = self.run_async(self._handle(event))
    self.assertEqual(ack.outcome, WebhookOutcome.UNPROCESSABLE)

  def test_denied_fails_quote(self):
    quote_id = self._processing_quote()
    event = testing.capture_event(DENIED, testing.quote_custom_id(quote_id))

    ack = self.run_async(self._handle(event))

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "failed")
    self.assertEqual(self.run_async(self.count(db.Shipment)), 0)

  def test_denial_never_overrides_paid(self):
    quote_id = self._processing_quote()
    custom_id = testing.quote_custom_id(quote_id)
    self.run_async(self._handle(testing.capture_event(COMPLETED, custom_id)))

    ack = self.run_async(self._handle(testing.capture_event(DECLINED, custom_id)))

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    self.assertIn("no change", ack.detail)
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "paid")

  def test_order_approved_activates_subscription(self):
    plan_code = self.seed_plan(billing_period="yearly")
    subscription_id = self.seed_subscription(
        plan_code, client_id=self.client_id, payment_reference="ORDER-5"
    )
    event = testing.order_approved_event(
        testing.plan_custom_id(subscription_id, plan_code), order_id="ORDER-5"
    )

    ack = self.run_async(self._handle(event))

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    subscription = self.run_async(self.fetch(db.Subscription, subscription_id))
    self.assertEqual(subscription.status, "active")
    self.assertTrue(subscription.is_active)
    self.assertEqual(subscription.payment_reference, "ORDER-5")
    self.assertIsNotNone(subscription.start_date)
    self.assertIsNotNone(subscription.end_date)
    emails = self.run_async(self.rows(db.EmailNotification))
    self.assertEqual([e.email_type for e in emails], ["subscription_activated"])

  def test_declined_cancels_pending_subscription(self):
    plan_code = self.seed_plan()
    subscription_id = self.seed_subscription(plan_code, client_id=self.client_id)
    event = testing.capture_event(
        DECLINED, testing.plan_custom_id(subscription_id, plan_code)
    )

    self.run_async(self._handle(event))

    subscription = self.run_async(self.fetch(db.Subscription, subscription_id))
    self.assertEqual(subscription.status, "cancelled")
    self.assertFalse(subscription.is_active)

  def test_database_failure_is_retryable(self):
    quote_id = self._processing_quote()
    event = testing.capture_event(COMPLETED, testing.quote_custom_id(quote_id))

    with self.assertRaises(InfrastructureError):
      self.run_async(self._handle(event, settlement_cls=BrokenSettlement))

    self.assertEqual(self._log_statuses(), ["received", "error"])
    # The provider retries; the redelivery is processed normally.
    ack = self.run_async(self._handle(event))
    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    self.assertEqual(self.run_async(self.count(db.Shipment)), 1)

  def test_every_processing_failure_is_logged(self):
    cases = (
        (ExhaustedSettlement, InfrastructureError),
        (TimedOutSettlement, InfrastructureError),
        (CrashingSettlement, RuntimeError),
    )
    for settlement_cls, expected_error in cases:
      with self.subTest(settlement_cls.__name__):
        quote_id = self._processing_quote()
        event = testing.capture_event(
            COMPLETED, testing.quote_custom_id(quote_id)
        )

        with self.assertRaises(expected_error):
          self.run_async(self._handle(event, settlement_cls=settlement_cls))

        rows = self.run_async(
            self.rows(
                db.WebhookEventLog, db.WebhookEventLog.event_id == event["id"]
            )
        )
        self.assertEqual([r.status for r in rows], ["received", "error"])
        self.assertTrue(rows[1].error_message)

  def test_non_string_event_fields(self):
    event = testing.capture_event(COMPLETED, "ignored")
    event["id"] = 42
    event["event_type"] = [COMPLETED]

    ack = self.run_async(self._handle(event))

    self.assertEqual(ack.outcome, WebhookOutcome.UNHANDLED)
    self.assertEqual(ack.event_id, "42")
    self.assertEqual(self._log_statuses(), ["received", "unhandled"])

  def test_completed_capture_settles_failed_quote(self):
    quote_id = self.seed_quote(
        self.client_id, payment_status="failed", payment_reference="ORDER-1"
    )
    event = testing.capture_event(COMPLETED, testing.quote_custom_id(quote_id))

    ack = self.run_async(self._handle(event))

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "paid")
    self.assertEqual(self.run_async(self.count(db.Shipment)), 1)

  def test_approval_reactivates_cancelled_subscription(self):
    plan_code = self.seed_plan()
    subscription_id = self.seed_subscription(
        plan_code, client_id=self.client_id, status="cancelled"
    )
    event = testing.order_approved_event(
        testing.plan_custom_id(subscription_id, plan_code), order_id="ORDER-8"
    )

    ack = self.run_async(self._handle(event))

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    subscription = self.run_async(self.fetch(db.Subscription, subscription_id))
    self.assertEqual(subscription.status, "active")
    self.assertTrue(subscription.is_active)


class CaptureWebhookRaceTest(testing.DatabaseTestCase):
  """The client capture and the provider webhook settle the same quote."""

  def setUp(self):
    super().setUp()
    self.client_id = self.seed_client()
    self.quote_id = self.seed_quote(self.client_id)
    self.order_id = self.run_async(self._create_order())

  async def _create_order(self):
    async with self.manager.session_factory() as session:
      service = PaymentOrderService(
          session, self.paypal.gateway(self.settings), self.settings
      )
      response = await service.create_order(
          CreateOrderRequest(context="freight_quote", quote_id=self.quote_id),
          CALLER,
      )
      return response.order_id

  async def _capture(self):
    async with self.manager.session_factory() as session:
      service = PaymentCaptureService(
          session, self.paypal.gateway(self.settings), self.settings
      )
      return await service.capture_provider_order(
          ProviderCaptureRequest(order_id=self.order_id), "key-1", CALLER
      )

  async def _webhook(self):
    event = testing.capture_event(
        COMPLETED, testing.quote_custom_id(self.quote_id), self.order_id
    )
    async with self.manager.session_factory() as session:
      reconciler = WebhookReconciler(
          session, self.paypal.gateway(self.settings), self.settings
      )
      return await reconciler.handle(testing.encode_event(event), {})

  async def _card_capture(self):
    async with self.manager.session_factory() as session:
      service = PaymentCaptureService(
          session, self.paypal.gateway(self.settings), self.settings
      )
      return await service.capture(
          CaptureRequest(
              quote_id=self.quote_id,
              payment_method="card",
              payment_token="tok_visa",
          ),
          "card-key",
          CALLER,
      )

  def _assert_card_converged(self, body, ack):
    self.assertEqual(body["payment_status"], "paid")
    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    shipments = self.run_async(self.rows(db.Shipment))
    self.assertLen(shipments, 1)
    self.assertEqual(body["shipment_id"], shipments[0].id)
    self.assertEqual(
        self.run_async(
            self.count(db.EventLog, db.EventLog.event_type == "quote_paid")
        ),
        1,
    )
    self.assertEqual(self.run_async(self.count(db.EmailNotification)), 2)

  def _assert_converged(self, body, ack):
    self.assertTrue(body["ok"])
    self.assertEqual(body["new_status"], "paid")
    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    shipments = self.run_async(self.rows(db.Shipment))
    self.assertLen(shipments, 1)
    self.assertEqual(body["tracking_number"], shipments[0].tracking_number)
    quote = self.run_async(self.fetch(db.FreightQuote, self.quote_id))
    self.assertEqual(quote.payment_status, "paid")
    self.assertEqual(quote.shipment_id, shipments[0].id)
    self.assertEqual(self.run_async(self.count(db.EmailNotification)), 2)

  def test_capture_first(self):
    async def race():
      return await asyncio.gather(self._capture(), self._webhook())

    body, ack = self.run_async(race())
    self._assert_converged(body, ack)

  def test_webhook_first(self):
    async def race():
      ack, body = await asyncio.gather(self._webhook(), self._capture())
      return body, ack

    body, ack = self.run_async(race())
    self._assert_converged(body, ack)

  def test_sequential_webhook_then_capture(self):
    ack = self.run_async(self._webhook())
    body = self.run_async(self._capture())
    self._assert_converged(body, ack)
    captures = [p for p in self.paypal.paths() if p.endswith("/capture")]
    self.assertEmpty(captures)

  def test_card_capture_first(self):
    async def race():
      return await asyncio.gather(self._card_capture(), self._webhook())

    body, ack = self.run_async(race())
    self._assert_card_converged(body, ack)

  def test_webhook_before_card_capture(self):
    async def race():
      ack, body = await asyncio.gather(self._webhook(), self._card_capture())
      return body, ack

    body, ack = self.run_async(race())
    self._assert_card_converged(body, ack)

  def test_pending_capture_then_completed_webhook(self):
    self.paypal.capture_status = "PENDING"
    body = self.run_async(self._capture())
    self.assertFalse(body["ok"])
    quote = self.run_async(self.fetch(db.FreightQuote, self.quote_id))
    self.assertEqual(quote.payment_status, "failed")

    ack = self.run_async(self._webhook())

    self.assertEqual(ack.outcome, WebhookOutcome.PROCESSED)
    quote = self.run_async(self.fetch(db.FreightQuote, self.quote_id))
    self.assertEqual(quote.payment_status, "paid")
    self.assertEqual(self.run_async(self.count(db.Shipment)), 1)
    self.assertEqual(
        self.run_async(
            self.count(db.EventLog, db.EventLog.event_type == "quote_paid")
        ),
        1,
    )


if __name__ == "__main__":
  absltest.main()
