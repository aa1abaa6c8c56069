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

"""Transactional email for completed orders.

Sends the customer confirmation and the admin alert through a Resend-style
JSON email API. Sending is best effort: a missing configuration produces a
warning and a failed result, and `dispatch_order_emails` never raises, so a
webhook's success never depends on email delivery.
"""

import dataclasses
import decimal
import logging
from typing import Any, Dict, List, Optional

import httpx
from models import ShippingAddress

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class OrderEmail:
  """Everything a confirmation or admin alert shows about an order."""

  to: str
  customer_name: str
  order_id: str
  book_title: str
  book_format: str
  quantity: int
  subtotal: decimal.Decimal
  tax_amount: decimal.Decimal
  shipping_amount: decimal.Decimal
  total_amount: decimal.Decimal
  shipping_address: ShippingAddress
  checkout_session_id: Optional[str] = None


@dataclasses.dataclass
class NotificationResult:
  success: bool
  message_id: Optional[str] = None
  error: Optional[str] = None


def _money(amount: decimal.Decimal) -> str:
  return f"${amount:.2f}"


def format_address(address: ShippingAddress) -> str:
  name = " ".join(p for p in (address.first_name, address.last_name) if p)
  lines = [name, address.address_line1 or ""]
  if address.address_line2:
    lines.append(address.address_line2)
  lines.append(
      f"{address.city or ''}, {address.state or ''} {address.postal_code or ''}"
  )
  lines.append(address.country)
  return "\n".join(line.strip() for line in lines if line.strip())


def render_order_summary(email: OrderEmail) -> str:
  return "\n".join([
      f"Order ID: {email.order_id}",
      f"Book: {email.book_title} ({email.book_format})",
      f"Quantity: {email.quantity}",
      f"Subtotal: {_money(email.subtotal)}",
      f"Shipping: {_money(email.shipping_amount)}",
      f"Tax: {_money(email.tax_amount)}",
      f"Total: {_money(email.total_amount)}",
      "",
      "Shipping to:",
      format_address(email.shipping_address),
  ])


class NotificationDispatcher:
  """Sends order emails through the email API."""

  def __init__(
      self,
      api_key: Optional[str],
      from_address: str,
      from_name: str,
      admin_email: Optional[str] = None,
      api_base: str = "https://api.resend.com",
      timeout_seconds: float = 10.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self.api_key = api_key
    self.sender = f"{from_name} <{from_address}>"
    self.admin_email = admin_email
    self.api_base = api_base.rstrip("/")
    self.timeout = httpx.Timeout(timeout_seconds)
    self.transport = transport

  async def _send(
      self, to: List[str], subject: str, text: str
  ) -> NotificationResult:
    payload: Dict[str, Any] = {
        "from": self.sender,
        "to": to,
        "subject": subject,
        "text": text,
    }
    try:
      async with httpx.AsyncClient(
          base_url=self.api_base, timeout=self.timeout, transport=self.transport
      ) as client:
        response = await client.post(
            "/emails",
            json=payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        response.raise_for_status()
        body = response.json()
    except (httpx.HTTPError, ValueError) as e:
      logger.error("Failed to send email %r to %s: %s", subject, to, e)
      return NotificationResult(success=False, error=str(e))
    return NotificationResult(success=True, message_id=body.get("id"))

  async def send_order_confirmation(self, email: OrderEmail) -> NotificationResult:
    if not self.api_key:
      logger.warning("Email API key not set, skipping order confirmation")
      return NotificationResult(
          success=False, error="Email service not configured"
      )

    text = "\n".join([
        f"Thank you for your preorder, {email.customer_name}!",
        "Your order has been confirmed and we're preparing it for you.",
        "",
        render_order_summary(email),
    ])
    result = await self._send(
        [email.to], f"Order Confirmation - {email.book_title}", text
    )
    if result.success:
      logger.info("Order confirmation sent for order %s", email.order_id)
    return result

  async def send_admin_notification(self, email: OrderEmail) -> NotificationResult:
    if not self.admin_email:
      logger.warning("Admin email not set, skipping admin notification")
      return NotificationResult(success=False, error="Admin email not configured")
    if not self.api_key:
      logger.warning("Email API key not set, skipping admin notification")
      return NotificationResult(
          success=False, error="Email service not configured"
      )

    text = "\n".join([
        "A new order has been placed and payment has been confirmed.",
        "",
        f"Customer: {email.customer_name} <{email.to}>",
        render_order_summary(email),
    ])
    if email.checkout_session_id:
      text += f"\n\nCheckout session: {email.checkout_session_id}"
    return await self._send(
        [self.admin_email], f"New Order: {email.book_title}", text
    )

  async def dispatch_order_emails(self, email: OrderEmail) -> List[NotificationResult]:
    """Sends both order emails; errors are logged, never raised."""
    results = []
    for send in (self.send_order_confirmation, self.send_admin_notification):
      try:
        results.append(await send(email))
      except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error(
            "Email dispatch for order %s failed: %s", email.order_id, e
        )
        results.append(NotificationResult(success=False, error=str(e)))
    return results
