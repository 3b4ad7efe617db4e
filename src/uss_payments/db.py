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

"""Database management and schema for the USS payment service.

This module provides the schema definitions and database session management
used by the service. It utilizes SQLAlchemy with SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup for the payments database.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging so the client
  capture path and the webhook path can work against the same file
  concurrently.
- Declarative Models: Defines tables for clients, freight quotes, shipments,
  pricing plans, subscriptions, idempotency tracking, the webhook event log,
  the business event log, queued email notifications and rate-limit hits.

Mutable business tables declare `__status_column__`, the column that
conditional updates compare against.
"""

import datetime
import logging
import time
from typing import Optional
import uuid

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import Date
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from uss_payments.enums import QuotePaymentStatus
from uss_payments.enums import QuoteStatus
from uss_payments.enums import ShipmentStatus
from uss_payments.enums import SubscriptionStatus

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow_iso() -> str:
  return datetime.datetime.now(datetime.timezone.utc).isoformat()


def new_id() -> str:
  return str(uuid.uuid4())


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, database_path: str) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{database_path}"
    self.engine = create_async_engine(url, echo=False)

    # Enable WAL mode
    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)
    logger.info("Payments database ready at %s", database_path)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class Client(Base):
  __tablename__ = "clients"

  id = Column(String, primary_key=True, default=new_id)
  user_id = Column(String, unique=True, index=True)
  email = Column(String, nullable=True)
  company_name = Column(String, nullable=True)


class FreightQuote(Base):
  __tablename__ = "freight_quotes"
  __status_column__ = "payment_status"

  id = Column(String, primary_key=True, default=new_id)
  client_id = Column(String, ForeignKey("clients.id"), index=True)
  amount = Column(Integer, nullable=True)  # In minor units (cents)
  currency = Column(String, default="EUR")
  status = Column(String, default=QuoteStatus.RECEIVED.value)
  payment_status = Column(String, default=QuotePaymentStatus.UNSET.value)
  shipment_id = Column(String, nullable=True)
  payment_provider = Column(String, nullable=True)
  payment_reference = Column(String, nullable=True, index=True)
  origin_port = Column(String, nullable=True)
  destination_port = Column(String, nullable=True)
  cargo_type = Column(String, nullable=True)
  paid_at = Column(String, nullable=True)
  updated_at = Column(String, nullable=True)


class Shipment(Base):
  __tablename__ = "shipments"
  __status_column__ = "current_status"

  id = Column(String, primary_key=True, default=new_id)
  client_id = Column(String, ForeignKey("clients.id"), index=True)
  # One shipment per quote, enforced by the store as well.
  quote_id = Column(String, unique=True, nullable=True)
  tracking_number = Column(String, unique=True, nullable=False)
  current_status = Column(String, default=ShipmentStatus.CONFIRMED.value)
  origin_port = Column(String, nullable=True)
  destination_port = Column(String, nullable=True)
  cargo_type = Column(String, nullable=True)
  created_at = Column(String, default=utcnow_iso)


class PricingPlan(Base):
  __tablename__ = "pricing_plans"

  code = Column(String, primary_key=True)
  name = Column(String)
  description = Column(String, nullable=True)
  price = Column(Integer)  # In minor units (cents)
  currency = Column(String, default="EUR")
  billing_period = Column(String)
  is_active = Column(Boolean, default=True)


class Subscription(Base):
  __tablename__ = "subscriptions"
  __status_column__ = "status"

  id = Column(String, primary_key=True, default=new_id)
  user_id = Column(String, index=True)
  client_id = Column(String, ForeignKey("clients.id"), nullable=True)
  plan_code = Column(String, ForeignKey("pricing_plans.code"))
  status = Column(String, default=SubscriptionStatus.PENDING.value)
  # Denormalized from status; both are always written together.
  is_active = Column(Boolean, default=False)
  start_date = Column(Date, nullable=True)
  end_date = Column(Date, nullable=True)
  payment_provider = Column(String, nullable=True)
  payment_reference = Column(String, nullable=True, index=True)
  updated_at = Column(String, nullable=True)


class IdempotencyRecord(Base):
  __tablename__ = "idempotency_records"

  key = Column(String, primary_key=True)
  user_id = Column(String, primary_key=True)
  request_hash = Column(String)
  response_status = Column(Integer)
  response_body = Column(JSON)
  created_at = Column(String, default=utcnow_iso)


class WebhookEventLog(Base):
  __tablename__ = "payment_logs"

  id = Column(Integer, primary_key=True, autoincrement=True)
  event_id = Column(String, index=True, nullable=True)
  event_type = Column(String, nullable=True)
  status = Column(String)
  payload = Column(JSON, nullable=True)
  error_message = Column(String, nullable=True)
  created_at = Column(String, default=utcnow_iso)


class EventLog(Base):
  __tablename__ = "events_log"

  id = Column(Integer, primary_key=True, autoincrement=True)
  event_type = Column(String)
  user_id = Column(String, nullable=True)
  client_id = Column(String, nullable=True)
  quote_id = Column(String, nullable=True)
  shipment_id = Column(String, nullable=True)
  subscription_id = Column(String, nullable=True)
  details = Column(String, nullable=True)
  created_at = Column(String, default=utcnow_iso)


class EmailNotification(Base):
  __tablename__ = "email_notifications"

  id = Column(Integer, primary_key=True, autoincrement=True)
  recipient_email = Column(String)
  email_type = Column(String)
  subject = Column(String)
  body = Column(String)
  # "metadata" is reserved on declarative classes.
  payload = Column("metadata", JSON, nullable=True)
  status = Column(String, default="pending")
  created_at = Column(String, default=utcnow_iso)


class RateLimitHit(Base):
  __tablename__ = "rate_limit_hits"

  id = Column(Integer, primary_key=True, autoincrement=True)
  caller = Column(String, index=True)
  action = Column(String)
  created_at = Column(Float, default=time.time)
