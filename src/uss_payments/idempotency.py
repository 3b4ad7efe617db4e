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

"""Durable idempotency records for client-initiated payment requests."""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db
from uss_payments.exceptions import IdempotencyConflictError

logger = logging.getLogger(__name__)


def compute_request_hash(data: Any) -> str:
  """Computes SHA256 hash of the JSON-serialized data."""
  if isinstance(data, BaseModel):
    # sort_keys is not supported in model_dump_json in Pydantic V2.
    # We dump to dict and use standard json.dumps for deterministic sorting.
    json_str = json.dumps(data.model_dump(mode="json"), sort_keys=True)
  else:
    json_str = json.dumps(data, sort_keys=True)
  return hashlib.sha256(json_str.encode("utf-8")).hexdigest()


class IdempotencyStore:
  """Maps (idempotency key, caller) to the response previously returned."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def get(
      self, key: str, user_id: str
  ) -> Optional[db.IdempotencyRecord]:
    return await self.session.get(
        db.IdempotencyRecord, (key, user_id), populate_existing=True
    )

  async def replay(
      self, key: str, user_id: str, request_hash: str
  ) -> Optional[Dict[str, Any]]:
    """Returns the stored response for the key, if any.

    Raises:
      IdempotencyConflictError: The key was used for a different request.
    """
    record = await self.get(key, user_id)
    if record is None:
      return None
    if record.request_hash != request_hash:
      raise IdempotencyConflictError(
          "Idempotency key reused with different parameters"
      )
    logger.info("Replaying stored response for idempotency key %s", key)
    return record.response_body

  async def put(
      self,
      key: str,
      user_id: str,
      request_hash: str,
      response_status: int,
      response_body: Dict[str, Any],
  ) -> None:
    """Stores the response in the caller's transaction.

    A concurrent request that already stored the same (key, caller) pair makes
    the flush fail with an IntegrityError; the caller rolls back and uses
    `replay` to return what the other request produced.
    """
    self.session.add(
        db.IdempotencyRecord(
            key=key,
            user_id=user_id,
            request_hash=request_hash,
            response_status=response_status,
            response_body=response_body,
            created_at=db.utcnow_iso(),
        )
    )
    await self.session.flush()
