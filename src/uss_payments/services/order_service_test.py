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

"""Tests for PaymentOrderService."""

import asyncio

from absl.testing import absltest

from uss_payments import db
from uss_payments import testing
from uss_payments.exceptions import AuthorizationError
from uss_payments.exceptions import ConflictError
from uss_payments.exceptions import InvalidRequestError
from uss_payments.exceptions import ProviderError
from uss_payments.exceptions import ResourceNotFoundError
from uss_payments.models import CallerIdentity
from uss_payments.models import CreateOrderRequest
from uss_payments.models import decode_payment_context
from uss_payments.services.order_service import PaymentOrderService

CALLER = CallerIdentity(user_id=testing.USER_ID, email=testing.USER_EMAIL)


def quote_order(quote_id):
  return CreateOrderRequest(context="freight_quote", quote_id=quote_id)


def plan_order(plan_code):
  return CreateOrderRequest(context="pricing_plan", plan_code=plan_code)


class PaymentOrderServiceTest(testing.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.client_id = self.seed_client()

  async def _create(self, request, caller=CALLER, origin=None):
    async with self.manager.session_factory() as session:
      service = PaymentOrderService(
          session, self.paypal.gateway(self.settings), self.settings
      )
      return await service.create_order(request, caller, origin)

  def test_quote_order_reserves_quote_and_embeds_context(self):
    quote_id = self.seed_quote(self.client_id)

    response = self.run_async(
        self._create(quote_order(quote_id), origin="https://uss.example/")
    )

    self.assertEqual(response.order_id, "ORDER-1")
    self.assertIn("checkoutnow?token=ORDER-1", response.approval_url)
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "processing")
    self.assertEqual(quote.payment_reference, "ORDER-1")
    self.assertEqual(quote.payment_provider, "paypal")

    unit = self.paypal.orders["ORDER-1"]["purchase_units"][0]
    context = decode_payment_context(unit["custom_id"])
    self.assertEqual(context.quote_id, quote_id)
    self.assertEqual(unit["amount"]["value"], "1500.00")
    self.assertEqual(
        self.paypal.orders["ORDER-1"]["application_context"]["return_url"],
        "https://uss.example/payment-success?context=freight_quote"
        f"&quote_id={quote_id}",
    )

  def test_second_order_for_same_quote_conflicts(self):
    quote_id = self.seed_quote(self.client_id)
    self.run_async(self._create(quote_order(quote_id)))

    with self.assertRaises(ConflictError) as cm:
      self.run_async(self._create(quote_order(quote_id)))
    self.assertEqual(cm.exception.code, "PAYMENT_IN_PROGRESS")
    self.assertLen(self.paypal.orders, 1)

  def test_concurrent_orders_create_one_provider_order(self):
    quote_id = self.seed_quote(self.client_id)

    async def race():
      return await asyncio.gather(
          self._create(quote_order(quote_id)),
          self._create(quote_order(quote_id)),
          return_exceptions=True,
      )

    results = self.run_async(race())
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    self.assertLen(conflicts, 1)
    self.assertLen(self.paypal.orders, 1)

  def test_paid_quote_conflicts(self):
    quote_id = self.seed_quote(self.client_id, payment_status="paid")
    with self.assertRaises(ConflictError) as cm:
      self.run_async(self._create(quote_order(quote_id)))
    self.assertEqual(cm.exception.code, "ALREADY_PAID")
    self.assertEmpty(self.paypal.requests)

  def test_failed_quote_can_be_retried(self):
    quote_id = self.seed_quote(self.client_id, payment_status="failed")
    self.run_async(self._create(quote_order(quote_id)))
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "processing")

  def test_quote_of_another_client(self):
    other_client = self.seed_client(user_id="user-2", email="other@example.com")
    quote_id = self.seed_quote(other_client)
    with self.assertRaises(AuthorizationError):
      self.run_async(self._create(quote_order(quote_id)))
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "unset")

  def test_unknown_quote(self):
    with self.assertRaises(ResourceNotFoundError):
      self.run_async(self._create(quote_order("missing")))

  def test_zero_amount(self):
    quote_id = self.seed_quote(self.client_id, amount=0)
    with self.assertRaises(InvalidRequestError):
      self.run_async(self._create(quote_order(quote_id)))

  def test_provider_failure_releases_reservation(self):
    quote_id = self.seed_quote(self.client_id)
    self.paypal.create_order_status = 500

    with self.assertRaises(ProviderError):
      self.run_async(self._create(quote_order(quote_id)))
    quote = self.run_async(self.fetch(db.FreightQuote, quote_id))
    self.assertEqual(quote.payment_status, "unset")
    self.assertIsNone(quote.payment_reference)

  def test_plan_order_creates_pending_subscription(self):
    plan_code = self.seed_plan()

    response = self.run_async(self._create(plan_order(plan_code)))

    subscriptions = self.run_async(self.rows(db.Subscription))
    self.assertLen(subscriptions, 1)
    subscription = subscriptions[0]
    self.assertEqual(subscription.status, "pending")
    self.assertFalse(subscription.is_active)
    self.assertEqual(subscription.client_id, self.client_id)
    self.assertEqual(subscription.payment_reference, response.order_id)

    unit = self.paypal.orders[response.order_id]["purchase_units"][0]
    context = decode_payment_context(unit["custom_id"])
    self.assertEqual(context.subscription_id, subscription.id)
    self.assertEqual(context.plan_code, plan_code)
    self.assertEqual(unit["amount"]["value"], "49.00")

  def test_each_plan_order_is_a_new_subscription(self):
    plan_code = self.seed_plan()
    self.run_async(self._create(plan_order(plan_code)))
    self.run_async(self._create(plan_order(plan_code)))
    self.assertEqual(self.run_async(self.count(db.Subscription)), 2)

  def test_inactive_plan(self):
    plan_code = self.seed_plan("legacy", is_active=False)
    with self.assertRaises(ResourceNotFoundError):
      self.run_async(self._create(plan_order(plan_code)))
    self.assertEqual(self.run_async(self.count(db.Subscription)), 0)

  def test_plan_provider_failure_leaves_pending_subscription(self):
    plan_code = self.seed_plan()
    self.paypal.create_order_status = 503
    with self.assertRaises(ProviderError):
      self.run_async(self._create(plan_order(plan_code)))
    subscription = self.run_async(self.rows(db.Subscription))[0]
    self.assertEqual(subscription.status, "pending")
    self.assertIsNone(subscription.payment_reference)

  def test_cancel_order_releases_processing_quote(self):
    quote_id = self.seed_quote(self.client_id)
    self.run_async(self._create(quote_order(quote_id)))

    async def cancel():
      async with self.manager.session_factory() as session:
        service = PaymentOrderService(
            session, self.paypal.gateway(self.settings), self.settings
        )
        return await service.cancel_order(quote_id, CALLER)

    response = self.run_async(cancel())
    self.assertEqual(response.payment_status, "unset")
    # A second order can now be made.
    self.run_async(self._create(quote_order(quote_id)))

  def test_cancel_order_keeps_paid_quote(self):
    quote_id = self.seed_quote(self.client_id, payment_status="paid")

    async def cancel():
      async with self.manager.session_factory() as session:
        service = PaymentOrderService(
            session, self.paypal.gateway(self.settings), self.settings
        )
        return await service.cancel_order(quote_id, CALLER)

    self.assertEqual(self.run_async(cancel()).payment_status, "paid")


if __name__ == "__main__":
  absltest.main()
