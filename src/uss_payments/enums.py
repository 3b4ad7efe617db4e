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

"""Enumerations for the USS payment service.

This module defines the lifecycle states of quotes, shipments and
subscriptions, along with the payment contexts, methods and provider event
types the reconciliation core understands.
"""

import enum


class QuoteStatus(str, enum.Enum):
  DRAFT = "draft"
  RECEIVED = "received"
  IN_PROGRESS = "in_progress"
  SENT_TO_CLIENT = "sent_to_client"
  ACCEPTED = "accepted"
  REFUSED = "refused"


class QuotePaymentStatus(str, enum.Enum):
  UNSET = "unset"
  PROCESSING = "processing"
  PAID = "paid"
  FAILED = "failed"


class ShipmentStatus(str, enum.Enum):
  DRAFT = "draft"
  QUOTE_PENDING = "quote_pending"
  CONFIRMED = "confirmed"
  IN_TRANSIT = "in_transit"
  AT_PORT = "at_port"
  DELIVERED = "delivered"
  ON_HOLD = "on_hold"
  CANCELLED = "cancelled"


class SubscriptionStatus(str, enum.Enum):
  PENDING = "pending"
  ACTIVE = "active"
  CANCELLED = "cancelled"


class BillingPeriod(str, enum.Enum):
  MONTHLY = "monthly"
  YEARLY = "yearly"
  ONE_TIME = "one_time"


class PaymentContextType(str, enum.Enum):
  FREIGHT_QUOTE = "freight_quote"
  PRICING_PLAN = "pricing_plan"


class PaymentMethod(str, enum.Enum):
  CARD = "card"
  MOBILE_MONEY = "mobile_money"
  CASH_ON_DELIVERY = "cash_on_delivery"


class SettlementStatus(str, enum.Enum):
  """Outcome of a synchronous capture as reported to the client."""

  PAID = "paid"
  PROCESSING = "processing"
  PENDING = "pending"
  FAILED = "failed"


class WebhookEventType(str, enum.Enum):
  ORDER_APPROVED = "CHECKOUT.ORDER.APPROVED"
  CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
  CAPTURE_DENIED = "PAYMENT.CAPTURE.DENIED"
  CAPTURE_DECLINED = "PAYMENT.CAPTURE.DECLINED"


class WebhookLogStatus(str, enum.Enum):
  RECEIVED = "received"
  PROCESSED = "processed"
  DUPLICATE = "duplicate"
  UNHANDLED = "unhandled"
  UNPROCESSABLE = "unprocessable"
  ERROR = "error"


class WebhookOutcome(str, enum.Enum):
  """What the provider is told about an acknowledged event."""

  PROCESSED = "processed"
  DUPLICATE = "duplicate"
  UNHANDLED = "unhandled"
  UNPROCESSABLE = "unprocessable"
