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

"""Health check route."""

import logging

from fastapi import APIRouter
from fastapi import Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import config
from uss_payments import dependencies
from uss_payments.models import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse, operation_id="health")
async def health(
    session: AsyncSession = Depends(dependencies.get_session),
    settings: config.Settings = Depends(dependencies.get_settings),
) -> HealthResponse:
  """Report database reachability and provider configuration."""
  try:
    await session.execute(text("SELECT 1"))
    database_ok = True
  except SQLAlchemyError as e:
    logger.error("Health check: database unreachable: %s", e)
    database_ok = False
  return HealthResponse(
      status="ok" if database_ok else "degraded",
      version=config.SERVICE_VERSION,
      database=database_ok,
      provider_configured=bool(
          settings.paypal_client_id and settings.paypal_client_secret
      ),
      webhook_verification=settings.webhook_verification_enabled,
  )
