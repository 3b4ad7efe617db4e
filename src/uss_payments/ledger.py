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

"""Row-level access to the quotes, shipments and subscriptions ledger.

Concurrency control is entirely in the store: callers re-read the current row
with `get` immediately before deciding, and mutate it with
`conditional_update`, which only succeeds while the row is still in one of the
expected statuses. Whichever writer lands first wins; the loser observes zero
affected rows and re-reads.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Type, Union

from sqlalchemy import exists
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db

logger = logging.getLogger(__name__)

ExpectedStatus = Union[str, Iterable[str]]


def _status_values(expected: ExpectedStatus) -> list[str]:
  if isinstance(expected, str):
    return [getattr(expected, "value", expected)]
  return [getattr(s, "value", s) for s in expected]


class LedgerRepository:
  """Accessor for the mutable business records touched by payment events."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def get(self, model: Type[db.Base], record_id: Any) -> Optional[Any]:
    """Reads a row by primary key, bypassing any cached instance."""
    if record_id is None:
      return None
    return await self.session.get(model, record_id, populate_existing=True)

  async def conditional_update(
      self,
      model: Type[db.Base],
      record_id: Any,
      expected_status: ExpectedStatus,
      patch: Dict[str, Any],
  ) -> bool:
    """Updates one row only if its status is still one of `expected_status`.

    Args:
      model: The mapped table class; must declare `__status_column__`.
      record_id: Primary key of the row.
      expected_status: A status value, or several, the row must currently hold.
      patch: Column values to write.

    Returns:
      True if the row was updated, False if it was missing or had moved on.
    """
    status_column = getattr(model, model.__status_column__)
    stmt = (
        update(model)
        .where(model.id == record_id)
        .where(status_column.in_(_status_values(expected_status)))
        .values(**patch)
        .execution_options(synchronize_session=False)
    )
    result = await self.session.execute(stmt)
    changed = result.rowcount > 0
    if not changed:
      logger.info(
          "Conditional update of %s %s skipped, status not in %s",
          model.__tablename__,
          record_id,
          _status_values(expected_status),
      )
    return changed

  async def update(
      self, model: Type[db.Base], record_id: Any, patch: Dict[str, Any]
  ) -> None:
    """Unconditionally patches one row (for columns outside the state machine)."""
    await self.session.execute(
        update(model)
        .where(model.id == record_id)
        .values(**patch)
        .execution_options(synchronize_session=False)
    )

  async def insert(self, record: db.Base) -> Any:
    """Adds a row and flushes so store constraints are checked immediately."""
    self.session.add(record)
    await self.session.flush()
    return getattr(record, "id", None)

  async def find_client_by_user(self, user_id: str) -> Optional[db.Client]:
    result = await self.session.execute(
        select(db.Client).where(db.Client.user_id == user_id)
    )
    return result.scalar_one_or_none()

  async def find_plan(self, plan_code: str) -> Optional[db.PricingPlan]:
    return await self.session.get(db.PricingPlan, plan_code)

  async def find_active_plan(self, plan_code: str) -> Optional[db.PricingPlan]:
    result = await self.session.execute(
        select(db.PricingPlan)
        .where(db.PricingPlan.code == plan_code)
        .where(db.PricingPlan.is_active.is_(True))
    )
    return result.scalar_one_or_none()

  async def find_quote_by_reference(
      self, payment_reference: str
  ) -> Optional[db.FreightQuote]:
    result = await self.session.execute(
        select(db.FreightQuote)
        .where(db.FreightQuote.payment_reference == payment_reference)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()

  async def find_subscription_by_reference(
      self, payment_reference: str
  ) -> Optional[db.Subscription]:
    result = await self.session.execute(
        select(db.Subscription)
        .where(db.Subscription.payment_reference == payment_reference)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()

  async def find_shipment_by_tracking_number(
      self, tracking_number: str
  ) -> Optional[db.Shipment]:
    result = await self.session.execute(
        select(db.Shipment).where(
            db.Shipment.tracking_number == tracking_number
        )
    )
    return result.scalar_one_or_none()

  async def tracking_number_exists(self, tracking_number: str) -> bool:
    result = await self.session.execute(
        select(
            exists().where(db.Shipment.tracking_number == tracking_number)
        )
    )
    return bool(result.scalar())

  async def record_event(self, event_type: str, details: str, **refs) -> None:
    """Appends a business event to the audit log in the current transaction."""
    self.session.add(db.EventLog(event_type=event_type, details=details, **refs))
