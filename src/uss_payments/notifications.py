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

"""Outbound email notifications.

Emails are queued in the `email_notifications` table and dispatched by a
separate mailer. Queueing is fire-and-forget: a failure is logged and never
propagates into the payment flow.
"""

import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from uss_payments import db
from uss_payments.gateway import format_amount

logger = logging.getLogger(__name__)

SIGNATURE = "L'équipe Universal Shipping Services"
DASHBOARD_URL = "https://natively.dev/client-dashboard"


class NotificationQueue:
  """Append-only sink for outbound email notifications."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def enqueue(
      self,
      recipient: Optional[str],
      template_type: str,
      subject: str,
      body: str,
      metadata: Optional[Dict[str, Any]] = None,
  ) -> bool:
    """Queues one email in its own transaction.

    Returns:
      True if the email was queued, False if it was skipped or failed.
    """
    if not recipient:
      logger.info("No recipient for %s notification, skipping", template_type)
      return False
    try:
      self.session.add(
          db.EmailNotification(
              recipient_email=recipient,
              email_type=template_type,
              subject=subject,
              body=body,
              payload=metadata,
          )
      )
      await self.session.commit()
    except Exception as e:  # pylint: disable=broad-exception-caught
      await self.session.rollback()
      logger.error(
          "Error queuing %s notification for %s: %s", template_type, recipient, e
      )
      return False
    logger.info("Email notification queued for %s", recipient)
    return True


def short_ref(record_id: str) -> str:
  return record_id[:8].upper()


def quote_paid_email(
    quote: db.FreightQuote, shipment: Optional[db.Shipment]
) -> tuple[str, str]:
  """Client confirmation for a paid freight quote."""
  subject = "Votre paiement a été reçu – Universal Shipping Services"
  tracking = (
      "Un suivi d'expédition a été créé avec le numéro: "
      f"{shipment.tracking_number}\n\n"
      if shipment
      else ""
  )
  body = (
      "Bonjour,\n\n"
      f"Nous avons bien reçu votre paiement pour le devis #{short_ref(quote.id)}.\n\n"
      "Détails du devis:\n"
      f"- Origine: {quote.origin_port or 'N/A'}\n"
      f"- Destination: {quote.destination_port or 'N/A'}\n"
      f"- Type de cargo: {quote.cargo_type or 'N/A'}\n"
      f"- Montant payé: {format_amount(quote.amount or 0)} {quote.currency or 'EUR'}\n\n"
      f"{tracking}"
      "Vous pouvez suivre votre expédition depuis votre tableau de bord client:\n"
      f"{DASHBOARD_URL}\n\n"
      "Merci de votre confiance.\n\n"
      f"Cordialement,\n{SIGNATURE}"
  )
  return subject, body


def operator_payment_email(
    quote: db.FreightQuote,
    client_email: Optional[str],
    payment_reference: Optional[str],
) -> tuple[str, str]:
  """Operator alert that a quote payment needs follow-up."""
  subject = f"Nouveau paiement - Devis #{short_ref(quote.id)}"
  body = (
      "Un paiement a été confirmé.\n\n"
      f"Devis ID : {quote.id}\n"
      f"Client : {client_email or 'N/A'}\n"
      f"Origine : {quote.origin_port or 'N/A'}\n"
      f"Destination : {quote.destination_port or 'N/A'}\n"
      f"Type de cargo : {quote.cargo_type or 'N/A'}\n"
      f"Montant : {format_amount(quote.amount or 0)} {quote.currency or 'EUR'}\n"
      f"Référence paiement : {payment_reference or 'N/A'}\n\n"
      "Action requise : traiter cette demande et contacter le client."
  )
  return subject, body


def subscription_activated_email(
    plan: db.PricingPlan, start_date: datetime.date, end_date: datetime.date
) -> tuple[str, str]:
  """Client confirmation that a plan subscription is active."""
  periods = {"monthly": "Mensuel", "yearly": "Annuel"}
  subject = f"Votre plan {plan.name} est activé – Universal Shipping Services"
  body = (
      "Bonjour,\n\n"
      f"Votre plan {plan.name} a été activé avec succès.\n\n"
      "Détails de votre abonnement:\n"
      f"- Plan: {plan.name}\n"
      f"- Prix: {format_amount(plan.price or 0)} {plan.currency}\n"
      f"- Période: {periods.get(plan.billing_period, 'Paiement unique')}\n"
      f"- Date de début: {start_date.strftime('%d/%m/%Y')}\n"
      f"- Date de fin: {end_date.strftime('%d/%m/%Y')}\n\n"
      "Vous pouvez maintenant profiter de tous les avantages de votre plan "
      f"depuis votre espace client:\n{DASHBOARD_URL}\n\n"
      f"Merci de votre confiance.\n\nCordialement,\n{SIGNATURE}"
  )
  return subject, body
