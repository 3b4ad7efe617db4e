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

"""Shared fixtures for the payment service tests."""

import asyncio
import json
import os
import re
import shutil
import tempfile
from typing import Any, Awaitable, Dict, List, Optional, TypeVar
import uuid

from absl.testing import absltest
import httpx
from sqlalchemy import func
from sqlalchemy import select

from uss_payments import config
from uss_payments import db
from uss_payments.gateway import OrderGateway
from uss_payments.models import PlanPaymentContext
from uss_payments.models import QuotePaymentContext
from uss_payments.models import encode_payment_context

T = TypeVar("T")

USER_ID = "user-1"
USER_EMAIL = "client@example.com"
OPERATOR_EMAIL = "ops@uss.example"


def make_settings(**overrides: Any) -> config.Settings:
  values = {
      "paypal_client_id": "client-id",
      "paypal_client_secret": "client-secret",
      "operator_email": OPERATOR_EMAIL,
      "app_base_url": "https://app.uss.example",
  }
  values.update(overrides)
  return config.Settings(**values)


class FakePayPal:
  """In-memory stand-in for the PayPal REST API, served via MockTransport."""

  def __init__(self):
    self.orders: Dict[str, Dict[str, Any]] = {}
    self.requests: List[httpx.Request] = []
    self.capture_status = "COMPLETED"
    self.verification_status = "SUCCESS"
    self.create_order_status = 201

  def handler(self, request: httpx.Request) -> httpx.Response:
    self.requests.append(request)
    path = request.url.path
    if path == "/v1/oauth2/token":
      return httpx.Response(
          200, json={"access_token": "A21AA-token", "expires_in": 32400}
      )
    if path == "/v2/checkout/orders":
      if self.create_order_status >= 400:
        return httpx.Response(
            self.create_order_status, json={"name": "INTERNAL_SERVICE_ERROR"}
        )
      order_id = f"ORDER-{len(self.orders) + 1}"
      self.orders[order_id] = json.loads(request.content)
      return httpx.Response(
          201,
          json={
              "id": order_id,
              "status": "CREATED",
              "links": [
                  {
                      "rel": "self",
                      "href": f"https://api.sandbox.paypal.com/v2/checkout/orders/{order_id}",
                  },
                  {
                      "rel": "approve",
                      "href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}",
                  },
              ],
          },
      )
    match = re.fullmatch(r"/v2/checkout/orders/([^/]+)/capture", path)
    if match:
      order_id = match.group(1)
      order = self.orders.get(order_id)
      if order is None:
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
      unit = order["purchase_units"][0]
      return httpx.Response(
          201,
          json={
              "id": order_id,
              "status": self.capture_status,
              "purchase_units": [{
                  "reference_id": unit["reference_id"],
                  "payments": {
                      "captures": [{
                          "id": f"CAPTURE-{order_id}",
                          "status": self.capture_status,
                          "custom_id": unit["custom_id"],
                      }]
                  },
              }],
          },
      )
    if path == "/v1/notifications/verify-webhook-signature":
      return httpx.Response(
          200, json={"verification_status": self.verification_status}
      )
    return httpx.Response(404, json={"name": "NOT_FOUND"})

  def gateway(self, settings: config.Settings) -> OrderGateway:
    return OrderGateway(settings, transport=httpx.MockTransport(self.handler))

  def paths(self) -> List[str]:
    return [r.url.path for r in self.requests]


def quote_custom_id(quote_id: str) -> str:
  return encode_payment_context(QuotePaymentContext(quote_id=quote_id))


def plan_custom_id(subscription_id: str, plan_code: str) -> str:
  return encode_payment_context(
      PlanPaymentContext(subscription_id=subscription_id, plan_code=plan_code)
  )


def capture_event(
    event_type: str,
    custom_id: Optional[str],
    order_id: str = "ORDER-1",
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
  """A PAYMENT.CAPTURE.* webhook event."""
  resource = {
      "id": f"CAPTURE-{order_id}",
      "status": event_type.rsplit(".", 1)[-1],
      "amount": {"currency_code": "EUR", "value": "1500.00"},
      "supplementary_data": {"related_ids": {"order_id": order_id}},
  }
  if custom_id is not None:
    resource["custom_id"] = custom_id
  return {
      "id": event_id or f"WH-{uuid.uuid4()}",
      "event_type": event_type,
      "resource_type": "capture",
      "resource": resource,
  }


def order_approved_event(
    custom_id: str, order_id: str = "ORDER-1", event_id: Optional[str] = None
) -> Dict[str, Any]:
  return {
      "id": event_id or f"WH-{uuid.uuid4()}",
      "event_type": "CHECKOUT.ORDER.APPROVED",
      "resource_type": "checkout-order",
      "resource": {
          "id": order_id,
          "status": "APPROVED",
          "purchase_units": [{"reference_id": "default", "custom_id": custom_id}],
      },
  }


def encode_event(event: Dict[str, Any]) -> bytes:
  return json.dumps(event).encode("utf-8")


class DatabaseTestCase(absltest.TestCase):
  """Test case backed by a fresh on-disk payments database."""

  def setUp(self):
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.manager = db.DatabaseManager()
    self.run_async(
        self.manager.init_db(os.path.join(self.test_dir, "payments.db"))
    )
    self.settings = make_settings()
    self.paypal = FakePayPal()

  def tearDown(self):
    asyncio.run(self.manager.close())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def run_async(self, awaitable: Awaitable[T]) -> T:
    """Runs a coroutine in a fresh event loop, releasing pooled connections."""

    async def runner():
      try:
        return await awaitable
      finally:
        if self.manager.engine is not None:
          await self.manager.engine.dispose()

    return asyncio.run(runner())

  async def add(self, *records: db.Base) -> None:
    async with self.manager.session_factory() as session:
      session.add_all(records)
      await session.commit()

  async def fetch(self, model, record_id: Any) -> Optional[Any]:
    async with self.manager.session_factory() as session:
      return await session.get(model, record_id)

  async def count(self, model, *criteria) -> int:
    async with self.manager.session_factory() as session:
      stmt = select(func.count()).select_from(model)
      if criteria:
        stmt = stmt.where(*criteria)
      result = await session.execute(stmt)
      return result.scalar_one()

  async def rows(self, model, *criteria) -> List[Any]:
    async with self.manager.session_factory() as session:
      stmt = select(model)
      if criteria:
        stmt = stmt.where(*criteria)
      result = await session.execute(stmt)
      return list(result.scalars().all())

  def seed_client(
      self, user_id: str = USER_ID, email: Optional[str] = USER_EMAIL
  ) -> str:
    client = db.Client(id=db.new_id(), user_id=user_id, email=email)
    self.run_async(self.add(client))
    return client.id

  def seed_quote(
      self,
      client_id: str,
      amount: Optional[int] = 150000,
      payment_status: str = "unset",
      payment_reference: Optional[str] = None,
  ) -> str:
    quote = db.FreightQuote(
        id=db.new_id(),
        client_id=client_id,
        amount=amount,
        currency="EUR",
        status="sent_to_client",
        payment_status=payment_status,
        payment_reference=payment_reference,
        origin_port="Dakar",
        destination_port="Marseille",
        cargo_type="container",
    )
    self.run_async(self.add(quote))
    return quote.id

  def seed_plan(
      self,
      code: str = "pro",
      price: int = 4900,
      billing_period: str = "monthly",
      is_active: bool = True,
  ) -> str:
    plan = db.PricingPlan(
        code=code,
        name=f"Plan {code.title()}",
        description="Tracking and priority support",
        price=price,
        currency="EUR",
        billing_period=billing_period,
        is_active=is_active,
    )
    self.run_async(self.add(plan))
    return plan.code

  def seed_subscription(
      self,
      plan_code: str,
      client_id: Optional[str] = None,
      user_id: str = USER_ID,
      status: str = "pending",
      payment_reference: Optional[str] = None,
  ) -> str:
    subscription = db.Subscription(
        id=db.new_id(),
        user_id=user_id,
        client_id=client_id,
        plan_code=plan_code,
        status=status,
        is_active=status == "active",
        payment_reference=payment_reference,
    )
    self.run_async(self.add(subscription))
    return subscription.id
