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

"""Enumerations for the preorder server.

This module defines the standard enums used throughout the server to represent
order lifecycle, shipping progress, checkout steps, and webhook handling.
"""

import enum


class OrderStatus(str, enum.Enum):
  PENDING = "pending"
  COMPLETED = "completed"
  FAILED = "failed"


class ShippingStatus(str, enum.Enum):
  NOT_SHIPPED = "not_shipped"
  SHIPPED = "shipped"
  DELIVERED = "delivered"
  RETURNED = "returned"


class CheckoutStep(str, enum.Enum):
  ORDER_DETAILS = "order_details"
  SHIPPING_ADDRESS = "shipping_address"
  PAYMENT = "payment"


# Forward order of the checkout steps.
CHECKOUT_STEP_ORDER = [
    CheckoutStep.ORDER_DETAILS,
    CheckoutStep.SHIPPING_ADDRESS,
    CheckoutStep.PAYMENT,
]


class TaxSource(str, enum.Enum):
  REMOTE = "remote"
  FALLBACK = "fallback"


class MatchedBy(str, enum.Enum):
  """Which lookup strategy located the order for a webhook event."""

  SESSION_ID = "sessionId"
  METADATA = "metadata"
  PAYMENT_INTENT = "paymentIntent"
  NONE = "none"


class WebhookEventType(str, enum.Enum):
  CHECKOUT_COMPLETED = "checkout.session.completed"
  PAYMENT_SUCCEEDED = "payment_intent.succeeded"
  PAYMENT_FAILED = "payment_intent.payment_failed"
