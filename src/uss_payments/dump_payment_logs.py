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

"""Utility script to dump PayPal webhook logs from the database.

This script reads and displays the webhook event log stored in the payments
DB: timestamp, event type, processing status and error message for each row.
It can optionally decode the payment context of each received event and
display the current state of the related quote or subscription.

Usage:
  uss-dump-payment-logs --database_path=... [--show_records] [--event_id=...]
"""

import asyncio
import json
import sys
from typing import Optional, TextIO

from absl import app as absl_app
from absl import flags
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

from uss_payments import config
from uss_payments.db import FreightQuote
from uss_payments.db import Subscription
from uss_payments.db import WebhookEventLog
from uss_payments.exceptions import InvalidRequestError
from uss_payments.models import QuotePaymentContext
from uss_payments.models import decode_payment_context
from uss_payments.services.webhook_reconciler import extract_custom_id

FLAGS = config.FLAGS
flags.DEFINE_bool(
    "show_records", False, "Show the related quote or subscription state"
)
flags.DEFINE_string("event_id", None, "Only show rows for this event id")


async def _print_record(
    session: AsyncSession, payload: dict, out: TextIO
) -> None:
  resource = payload.get("resource") or {}
  try:
    context = decode_payment_context(extract_custom_id(resource))
  except InvalidRequestError as e:
    print(f"  Context: unreadable ({e.message})", file=out)
    return
  if isinstance(context, QuotePaymentContext):
    quote = await session.get(FreightQuote, context.quote_id)
    state = quote.payment_status if quote else "missing"
    print(f"  Quote {context.quote_id}: {state}", file=out)
  else:
    subscription = await session.get(Subscription, context.subscription_id)
    state = subscription.status if subscription else "missing"
    print(f"  Subscription {context.subscription_id}: {state}", file=out)


async def dump_logs(
    session: AsyncSession,
    show_records: bool = False,
    event_id: Optional[str] = None,
    out: TextIO = sys.stdout,
) -> int:
  """Prints the webhook log and returns the number of rows printed."""
  print("=== PAYMENT LOGS ===", file=out)
  query = select(WebhookEventLog).order_by(WebhookEventLog.id)
  if event_id:
    query = query.where(WebhookEventLog.event_id == event_id)
  result = await session.execute(query)
  logs = result.scalars().all()

  if not logs:
    print("No payment logs found.", file=out)
    return 0

  for log in logs:
    print(
        f"[{log.created_at}] {log.event_type} {log.event_id} -> {log.status}",
        file=out,
    )
    if log.error_message:
      print(f"  Message: {log.error_message}", file=out)
    if log.payload:
      if show_records:
        await _print_record(session, log.payload, out)
      print(f"  Payload: {json.dumps(log.payload, indent=2)}", file=out)
    print("-" * 40, file=out)
  return len(logs)


async def _run() -> None:
  if not FLAGS.database_path:
    print("Error: --database_path is required.")
    sys.exit(1)

  db_url = f"sqlite+aiosqlite:///{FLAGS.database_path}"
  engine = create_async_engine(db_url, echo=False)
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )
  async with session_factory() as session:
    await dump_logs(session, FLAGS.show_records, FLAGS.event_id)
  await engine.dispose()


def main(argv):
  """Main entry point for the log dump script."""
  del argv
  asyncio.run(_run())


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
