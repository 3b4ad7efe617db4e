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

"""USS Payment Service (Python/FastAPI)."""

import logging
import sys
from typing import Sequence

from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DBAPIError
import uvicorn

from uss_payments import config
from uss_payments.exceptions import InfrastructureError
from uss_payments.exceptions import InvalidRequestError
from uss_payments.exceptions import PaymentServiceError
from uss_payments.exceptions import ProviderError
from uss_payments.routes.health import router as health_router
from uss_payments.routes.payments import router as payments_router
from uss_payments.routes.tracking import router as tracking_router
from uss_payments.routes.webhooks import router as webhooks_router

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="USS Payment Service",
    version=config.SERVICE_VERSION,
    description="Payment and subscription reconciliation for USS",
    lifespan=config.lifespan,
)


def _error_response(exc: PaymentServiceError) -> JSONResponse:
  return JSONResponse(
      status_code=exc.status_code,
      content={"detail": exc.message, "code": exc.code},
  )


@app.exception_handler(PaymentServiceError)
async def payment_exception_handler(
    request: Request, exc: PaymentServiceError
):
  """Converts service exceptions to JSON responses."""
  if isinstance(exc, (ProviderError, InfrastructureError)):
    logger.error(
        "%s %s failed: %s", request.method, request.url.path, exc.detail
    )
  return _error_response(exc)


@app.exception_handler(DBAPIError)
async def database_exception_handler(request: Request, exc: DBAPIError):
  """Surfaces unexpected database failures as retryable 503s."""
  return await payment_exception_handler(request, InfrastructureError(str(exc)))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
):
  del request  # Unused.
  errors = exc.errors()
  message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
  return _error_response(InvalidRequestError(message))


app.include_router(payments_router)
app.include_router(webhooks_router)
app.include_router(tracking_router)
app.include_router(health_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the USS Payment Service."""
  del argv  # Unused.

  if config.FLAGS.database_path is None or config.FLAGS.port is None:
    logger.error("Both --database_path and --port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
