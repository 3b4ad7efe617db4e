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

"""Per-caller, per-action rate limiting backed by the payments database.

Limits are an anti-abuse measure only. Correctness never depends on them: a
store failure is logged and the request goes through.
"""

import logging
import time
from typing import Callable

from sqlalchemy import delete
from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db
from uss_payments.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class RateLimiter:
  """Sliding-window counter stored in `rate_limit_hits`."""

  def __init__(
      self, session: AsyncSession, clock: Callable[[], float] = time.time
  ):
    self.session = session
    self.clock = clock

  async def hit(
      self, caller: str, action: str, limit: int, window_seconds: int
  ) -> None:
    """Records an attempt, refusing it when the window is already full.

    Raises:
      RateLimitedError: `limit` attempts were already made in the window.
    """
    if limit <= 0:
      return
    now = self.clock()
    since = now - window_seconds
    try:
      # Expired hits for this caller are dropped as we go.
      await self.session.execute(
          delete(db.RateLimitHit)
          .where(db.RateLimitHit.caller == caller)
          .where(db.RateLimitHit.action == action)
          .where(db.RateLimitHit.created_at < since)
      )
      result = await self.session.execute(
          select(func.count())
          .select_from(db.RateLimitHit)
          .where(db.RateLimitHit.caller == caller)
          .where(db.RateLimitHit.action == action)
      )
      count = result.scalar_one()
      if count >= limit:
        await self.session.commit()
        logger.warning(
            "Rate limit reached for %s on %s (%d in %ds)",
            caller,
            action,
            count,
            window_seconds,
        )
        raise RateLimitedError(
            "Trop de tentatives. Veuillez réessayer plus tard."
        )
      self.session.add(
          db.RateLimitHit(caller=caller, action=action, created_at=now)
      )
      await self.session.commit()
    except SQLAlchemyError as e:
      await self.session.rollback()
      logger.warning("Rate limiter unavailable for %s/%s: %s", caller, action, e)

  async def reset(self, caller: str, action: str) -> None:
    """Clears the window after a successful attempt."""
    try:
      await self.session.execute(
          delete(db.RateLimitHit)
          .where(db.RateLimitHit.caller == caller)
          .where(db.RateLimitHit.action == action)
      )
      await self.session.commit()
    except SQLAlchemyError as e:
      await self.session.rollback()
      logger.warning("Rate limiter reset failed for %s/%s: %s", caller, action, e)
