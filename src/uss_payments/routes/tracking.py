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

"""Public shipment tracking lookup."""

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import config
from uss_payments import dependencies
from uss_payments.exceptions import InvalidRequestError
from uss_payments.exceptions import ResourceNotFoundError
from uss_payments.ledger import LedgerRepository
from uss_payments.models import TrackingResponse
from uss_payments.rate_limit import RateLimiter
from uss_payments.tracking import is_valid_tracking_number

router = APIRouter(tags=["tracking"])


@router.get(
    "/tracking/{tracking_number}",
    response_model=TrackingResponse,
    operation_id="track_shipment",
)
async def track_shipment(
    request: Request,
    tracking_number: str = Path(...),
    session: AsyncSession = Depends(dependencies.get_session),
    rate_limiter: RateLimiter = Depends(dependencies.get_rate_limiter),
    settings: config.Settings = Depends(dependencies.get_settings),
) -> TrackingResponse:
  """Look up a shipment by tracking number. No authentication required."""
  client_address = request.client.host if request.client else "unknown"
  await rate_limiter.hit(
      client_address,
      "tracking",
      settings.tracking_rate_limit,
      settings.tracking_rate_window_seconds,
  )

  tracking_number = tracking_number.strip().upper()
  if not is_valid_tracking_number(tracking_number):
    raise InvalidRequestError("Invalid tracking number format")

  shipment = await LedgerRepository(session).find_shipment_by_tracking_number(
      tracking_number
  )
  if shipment is None:
    raise ResourceNotFoundError("Shipment not found")
  return TrackingResponse(
      tracking_number=shipment.tracking_number,
      status=shipment.current_status,
      origin=shipment.origin_port,
      destination=shipment.destination_port,
      created_at=shipment.created_at,
  )
