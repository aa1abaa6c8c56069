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

"""Custom exceptions for the preorder server."""

from typing import Optional


class BookstoreError(Exception):
  """Base class for all preorder server exceptions."""

  def __init__(
      self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    super().__init__(self.message)


class ResourceNotFoundError(BookstoreError):
  """Raised when a requested resource is not found."""

  def __init__(self, message: str):
    super().__init__(message, code="RESOURCE_NOT_FOUND", status_code=404)


class InvalidRequestError(BookstoreError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str, field: Optional[str] = None):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)
    self.field = field


class InvalidSignatureError(BookstoreError):
  """Raised when a webhook payload fails signature verification."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_SIGNATURE", status_code=400)


class PaymentProcessorError(BookstoreError):
  """Raised when the payment processor is unreachable or rejects a call.

  The checkout step is not advanced; the caller may retry.
  """

  def __init__(
      self,
      message: str,
      code: str = "PAYMENT_PROCESSOR_ERROR",
      status_code: int = 502,
  ):
    super().__init__(message, code=code, status_code=status_code)


class PersistenceError(BookstoreError):
  """Raised when an order cannot be written."""

  def __init__(self, message: str):
    super().__init__(message, code="PERSISTENCE_ERROR", status_code=500)


class InvalidConfigurationError(BookstoreError):
  """Raised when stored site configuration has the wrong shape."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_CONFIGURATION", status_code=500)


class StaleOrderError(BookstoreError):
  """Raised when a conditional order update loses a concurrent write."""

  def __init__(self, message: str):
    super().__init__(message, code="STALE_ORDER", status_code=409)


class CheckoutStateError(BookstoreError):
  """Raised when a checkout flow action is not allowed in its current step."""

  def __init__(self, message: str):
    super().__init__(message, code="CHECKOUT_STATE_ERROR", status_code=409)
