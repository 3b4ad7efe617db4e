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

"""Custom exceptions for the USS payment service."""

from typing import Optional


class PaymentServiceError(Exception):
  """Base class for all payment service exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class InvalidRequestError(PaymentServiceError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class AuthenticationError(PaymentServiceError):
  """Raised when no caller identity accompanies a client request."""

  def __init__(self, message: str = "Unauthorized"):
    super().__init__(message, code="UNAUTHENTICATED", status_code=401)


class AuthorizationError(PaymentServiceError):
  """Raised when the caller does not own the requested resource."""

  def __init__(self, message: str):
    super().__init__(message, code="FORBIDDEN", status_code=403)


class ResourceNotFoundError(PaymentServiceError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class ConflictError(PaymentServiceError):
  """Raised when the resource is already settled or a payment is in flight."""

  def __init__(self, message: str, code: str = "CONFLICT"):
    super().__init__(message, code=code, status_code=409)


class IdempotencyConflictError(PaymentServiceError):
  """Raised when an idempotency key is reused with different parameters."""

  def __init__(self, message: str):
    super().__init__(message, code="IDEMPOTENCY_CONFLICT", status_code=409)


class RateLimitedError(PaymentServiceError):
  """Raised when a caller exceeds the allowed attempts for an action."""

  def __init__(self, message: str):
    super().__init__(message, code="RATE_LIMITED", status_code=429)


class WebhookSignatureError(PaymentServiceError):
  """Raised when an inbound webhook fails authenticity verification."""

  def __init__(self, message: str = "Invalid webhook signature"):
    super().__init__(message, code="INVALID_SIGNATURE", status_code=400)


class ProviderError(PaymentServiceError):
  """Raised when the external payment provider fails.

  The message returned to callers is generic; `detail` holds the provider's
  own error text and is only written to the logs.
  """

  def __init__(self, detail: str, provider_status: Optional[int] = None):
    super().__init__(
        "Payment provider unavailable, please retry",
        code="PROVIDER_ERROR",
        status_code=502,
    )
    self.detail = detail
    self.provider_status = provider_status


class InfrastructureError(PaymentServiceError):
  """Raised when the database or network fails in a retryable way."""

  def __init__(self, detail: str):
    super().__init__(
        "Service temporarily unavailable, please retry",
        code="SERVICE_UNAVAILABLE",
        status_code=503,
    )
    self.detail = detail
