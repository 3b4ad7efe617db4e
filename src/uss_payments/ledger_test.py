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

"""Tests for the ledger repository."""

from absl.testing import absltest
from sqlalchemy.exc import IntegrityError

from uss_payments import db
from uss_payments import testing
from uss_payments.enums import QuotePaymentStatus
from uss_payments.ledger import LedgerRepository


class LedgerRepositoryTest(testing.DatabaseTestCase):

  def setUp(self):
    super().setUp()
    self.client_id = self.seed_client()
    self.quote_id = self.seed_quote(self.client_id)

  def test_conditional_update_applies_when_status_matches(self):
    async def run():
      async with self.manager.session_factory() as session:
        ledger = LedgerRepository(session)
        changed = await ledger.conditional_update(
            db.FreightQuote,
            self.quote_id,
            [QuotePaymentStatus.UNSET, QuotePaymentStatus.FAILED],
            {"payment_status": "processing"},
        )
        await session.commit()
        return changed

    self.assertTrue(self.run_async(run()))
    quote = self.run_async(self.fetch(db.FreightQuote, self.quote_id))
    self.assertEqual(quote.payment_status, "processing")

  def test_conditional_update_skips_when_status_moved_on(self):
    async def run():
      async with self.manager.session_factory() as session:
        ledger = LedgerRepository(session)
        changed = await ledger.conditional_update(
            db.FreightQuote, self.quote_id, "processing", {"payment_status": "paid"}
        )
        await session.commit()
        return changed

    self.assertFalse(self.run_async(run()))
    quote = self.run_async(self.fetch(db.FreightQuote, self.quote_id))
    self.assertEqual(quote.payment_status, "unset")

  def test_conditional_update_of_missing_row(self):
    async def run():
      async with self.manager.session_factory() as session:
        return await LedgerRepository(session).conditional_update(
            db.FreightQuote, "missing", "unset", {"payment_status": "paid"}
        )

    self.assertFalse(self.run_async(run()))

  def test_get_sees_changes_made_by_another_session(self):
    async def run():
      async with self.manager.session_factory() as reader:
        ledger = LedgerRepository(reader)
        before = await ledger.get(db.FreightQuote, self.quote_id)
        self.assertEqual(before.payment_status, "unset")
        async with self.manager.session_factory() as writer:
          await LedgerRepository(writer).update(
              db.FreightQuote, self.quote_id, {"payment_status": "failed"}
          )
          await writer.commit()
        after = await ledger.get(db.FreightQuote, self.quote_id)
        return after.payment_status

    self.assertEqual(self.run_async(run()), "failed")

  def test_tracking_numbers_are_unique_in_store(self):
    async def run():
      async with self.manager.session_factory() as session:
        ledger = LedgerRepository(session)
        await ledger.insert(
            db.Shipment(
                id="s-1", client_id=self.client_id, tracking_number="USS-AAAAAAA"
            )
        )
        await session.commit()
        self.assertTrue(await ledger.tracking_number_exists("USS-AAAAAAA"))
        self.assertFalse(await ledger.tracking_number_exists("USS-BBBBBBB"))
        found = await ledger.find_shipment_by_tracking_number("USS-AAAAAAA")
        self.assertEqual(found.id, "s-1")
        with self.assertRaises(IntegrityError):
          await ledger.insert(
              db.Shipment(
                  id="s-2",
                  client_id=self.client_id,
                  tracking_number="USS-AAAAAAA",
              )
          )

    self.run_async(run())

  def test_find_by_reference(self):
    subscription_plan = self.seed_plan()
    self.seed_subscription(
        subscription_plan, self.client_id, payment_reference="ORDER-9"
    )

    async def run():
      async with self.manager.session_factory() as session:
        ledger = LedgerRepository(session)
        await ledger.update(
            db.FreightQuote, self.quote_id, {"payment_reference": "ORDER-7"}
        )
        await session.commit()
        quote = await ledger.find_quote_by_reference("ORDER-7")
        subscription = await ledger.find_subscription_by_reference("ORDER-9")
        client = await ledger.find_client_by_user(testing.USER_ID)
        return quote.id, subscription.plan_code, client.id

    quote_id, plan_code, client_id = self.run_async(run())
    self.assertEqual(quote_id, self.quote_id)
    self.assertEqual(plan_code, "pro")
    self.assertEqual(client_id, self.client_id)

  def test_find_active_plan_ignores_inactive(self):
    self.seed_plan("legacy", is_active=False)

    async def run():
      async with self.manager.session_factory() as session:
        ledger = LedgerRepository(session)
        return (
            await ledger.find_active_plan("legacy"),
            await ledger.find_plan("legacy"),
        )

    active, any_plan = self.run_async(run())
    self.assertIsNone(active)
    self.assertEqual(any_plan.code, "legacy")

  def test_record_event(self):
    async def run():
      async with self.manager.session_factory() as session:
        await LedgerRepository(session).record_event(
            "quote_paid", "Paid", quote_id=self.quote_id
        )
        await session.commit()

    self.run_async(run())
    events = self.run_async(self.rows(db.EventLog))
    self.assertLen(events, 1)
    self.assertEqual(events[0].quote_id, self.quote_id)


if __name__ == "__main__":
  absltest.main()
