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

"""Human-readable shipment tracking numbers."""

import logging
import random
import re
import secrets
import string
from typing import Awaitable, Callable

from uss_payments.exceptions import InfrastructureError

logger = logging.getLogger(__name__)

TRACKING_PREFIX = "USS-"
TRACKING_ALPHABET = string.ascii_uppercase + string.digits
TRACKING_LENGTH = 7
MAX_ATTEMPTS = 50

TRACKING_NUMBER_PATTERN = re.compile(r"^USS-[A-Z0-9]{7}$")


def is_valid_tracking_number(value: str) -> bool:
  return bool(TRACKING_NUMBER_PATTERN.match(value))


async def generate_tracking_number(
    is_taken: Callable[[str], Awaitable[bool]],
    rng: random.Random = secrets.SystemRandom(),
    alphabet: str = TRACKING_ALPHABET,
    length: int = TRACKING_LENGTH,
    max_attempts: int = MAX_ATTEMPTS,
) -> str:
  """Draws tracking numbers until one is not already in use.

  Args:
    is_taken: Async predicate telling whether a candidate is already assigned.
    rng: Source of randomness.
    alphabet: Characters the random part is drawn from.
    length: Length of the random part.
    max_attempts: Draws before giving up.

  Returns:
    A tracking number unused at the time of the check. The unique constraint
    on shipments still guards the insert itself.

  Raises:
    InfrastructureError: Every draw collided.
  """
  for attempt in range(1, max_attempts + 1):
    candidate = TRACKING_PREFIX + "".join(
        rng.choice(alphabet) for _ in range(length)
    )
    if not await is_taken(candidate):
      return candidate
    logger.debug(
        "Tracking number collision on attempt %d: %s", attempt, candidate
    )
  raise InfrastructureError(
      f"Could not allocate a tracking number after {max_attempts} attempts"
  )
