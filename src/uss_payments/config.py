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

"""Shared configuration and startup logic for the USS payment service.

Every setting is an absl flag whose default comes from the environment, so the
service can be configured either on the command line or by the platform that
hosts it. `get_settings` freezes the current flag values into a `Settings`
model that is handed to the services through FastAPI dependencies.
"""

import contextlib
import os
from typing import Any

from absl import flags
from fastapi import FastAPI
from pydantic import BaseModel
from pydantic import ConfigDict

from uss_payments import db

FLAGS = flags.FLAGS

SERVICE_VERSION = "1.0.0"

PAYPAL_API_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


def _env_int(name: str, default: int) -> int:
  value = os.environ.get(name)
  return int(value) if value else default


# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string(
      "database_path",
      os.environ.get("USS_DATABASE_PATH"),
      "Path to the payments SQLite DB",
  )
  flags.DEFINE_integer("port", _env_int("PORT", 0) or None, "Port to serve on")
  flags.DEFINE_string(
      "paypal_env",
      os.environ.get("PAYPAL_ENV", "sandbox"),
      "PayPal environment: sandbox or live",
  )
  flags.DEFINE_string(
      "paypal_client_id",
      os.environ.get("PAYPAL_CLIENT_ID", ""),
      "PayPal REST client id",
  )
  flags.DEFINE_string(
      "paypal_client_secret",
      os.environ.get("PAYPAL_CLIENT_SECRET", ""),
      "PayPal REST client secret",
  )
  flags.DEFINE_string(
      "paypal_webhook_id",
      os.environ.get("PAYPAL_WEBHOOK_ID", ""),
      "PayPal webhook id; when empty, webhook signatures are not verified",
  )
  flags.DEFINE_string(
      "app_base_url",
      os.environ.get("APP_BASE_URL", "https://natively.dev"),
      "Base URL of the client app, used for payment return/cancel URLs",
  )
  flags.DEFINE_string(
      "operator_email",
      os.environ.get(
          "OPERATOR_EMAIL", "contact@universal-shippingservices.com"
      ),
      "Recipient of operator payment notifications",
  )
  flags.DEFINE_integer(
      "provider_timeout_seconds",
      _env_int("PROVIDER_TIMEOUT_SECONDS", 15),
      "Timeout for payment provider calls",
  )
  flags.DEFINE_integer(
      "capture_timeout_seconds",
      _env_int("CAPTURE_TIMEOUT_SECONDS", 20),
      "Timeout for payment provider capture calls",
  )
  flags.DEFINE_integer(
      "capture_rate_limit",
      _env_int("CAPTURE_RATE_LIMIT", 3),
      "Capture attempts allowed per caller and window",
  )
  flags.DEFINE_integer(
      "capture_rate_window_seconds",
      _env_int("CAPTURE_RATE_WINDOW_SECONDS", 300),
      "Window for capture rate limiting",
  )
  flags.DEFINE_integer(
      "tracking_rate_limit",
      _env_int("TRACKING_RATE_LIMIT", 10),
      "Public tracking lookups allowed per client address and window",
  )
  flags.DEFINE_integer(
      "tracking_rate_window_seconds",
      _env_int("TRACKING_RATE_WINDOW_SECONDS", 60),
      "Window for tracking rate limiting",
  )
except flags.DuplicateFlagError:
  pass


class Settings(BaseModel):
  """Immutable snapshot of the service configuration."""

  model_config = ConfigDict(frozen=True)

  database_path: str | None = None
  paypal_env: str = "sandbox"
  paypal_client_id: str = ""
  paypal_client_secret: str = ""
  paypal_webhook_id: str = ""
  app_base_url: str = "https://natively.dev"
  operator_email: str = "contact@universal-shippingservices.com"
  provider_timeout_seconds: int = 15
  capture_timeout_seconds: int = 20
  capture_rate_limit: int = 3
  capture_rate_window_seconds: int = 300
  tracking_rate_limit: int = 10
  tracking_rate_window_seconds: int = 60

  @property
  def paypal_api_url(self) -> str:
    return PAYPAL_API_URLS.get(self.paypal_env, PAYPAL_API_URLS["sandbox"])

  @property
  def webhook_verification_enabled(self) -> bool:
    return bool(self.paypal_webhook_id)


def _flag_value(name: str) -> Any:
  # Unparsed flags (e.g. under a test runner) still expose their defaults.
  if FLAGS.is_parsed():
    return getattr(FLAGS, name)
  return FLAGS[name].value


def get_settings() -> Settings:
  """Builds the settings from the current flag values."""
  values = {name: _flag_value(name) for name in Settings.model_fields}
  return Settings(**values)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for initializing the database."""
  del app  # Unused.
  # In tests or if flags aren't set, this might be None, handled by caller
  database_path = _flag_value("database_path")
  if database_path:
    await db.manager.init_db(database_path)
  yield
  await db.manager.close()
