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

"""FastAPI dependencies for the USS payment service.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Header extraction (caller identity, Idempotency-Key).
- Settings and database session management.
- Service instantiation (order, capture and webhook services).
"""

from typing import AsyncGenerator, Optional

from fastapi import Depends
from fastapi import Header
from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import config
from uss_payments import db
from uss_payments.exceptions import AuthenticationError
from uss_payments.exceptions import InfrastructureError
from uss_payments.exceptions import InvalidRequestError
from uss_payments.gateway import OrderGateway
from uss_payments.models import CallerIdentity
from uss_payments.rate_limit import RateLimiter
from uss_payments.services.capture_service import PaymentCaptureService
from uss_payments.services.order_service import PaymentOrderService
from uss_payments.services.webhook_reconciler import WebhookReconciler


def get_settings() -> config.Settings:
  """Dependency provider for the service settings."""
  return config.get_settings()


async def caller_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
) -> CallerIdentity:
  """Extracts the caller set by the platform's auth gateway."""
  if not x_user_id:
    raise AuthenticationError("Missing caller identity")
  return CallerIdentity(user_id=x_user_id, email=x_user_email)


async def idempotency_header(
    idempotency_key: Optional[str] = Header(None),
) -> str:
  """Extracts the Idempotency-Key header, which is mandatory."""
  if not idempotency_key:
    raise InvalidRequestError("Idempotency-Key header is required")
  return idempotency_key


async def get_session() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a payments DB session."""
  if db.manager.session_factory is None:
    raise InfrastructureError("Database not initialized")
  async with db.manager.session_factory() as session:
    yield session


def get_order_gateway(
    settings: config.Settings = Depends(get_settings),
) -> OrderGateway:
  """Dependency provider for the PayPal gateway."""
  return OrderGateway(settings)


def get_rate_limiter(
    session: AsyncSession = Depends(get_session),
) -> RateLimiter:
  return RateLimiter(session)


def get_order_service(
    session: AsyncSession = Depends(get_session),
    gateway: OrderGateway = Depends(get_order_gateway),
    settings: config.Settings = Depends(get_settings),
) -> PaymentOrderService:
  """Dependency provider for PaymentOrderService."""
  return PaymentOrderService(session, gateway, settings)


def get_capture_service(
    session: AsyncSession = Depends(get_session),
    gateway: OrderGateway = Depends(get_order_gateway),
    settings: config.Settings = Depends(get_settings),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> PaymentCaptureService:
  """Dependency provider for PaymentCaptureService."""
  return PaymentCaptureService(
      session, gateway, settings, rate_limiter=rate_limiter
  )


def get_webhook_reconciler(
    session: AsyncSession = Depends(get_session),
    gateway: OrderGateway = Depends(get_order_gateway),
    settings: config.Settings = Depends(get_settings),
) -> WebhookReconciler:
  """Dependency provider for WebhookReconciler."""
  return WebhookReconciler(session, gateway, settings)
