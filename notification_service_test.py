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

"""Tests for order email dispatch."""

import asyncio
import decimal

from absl.testing import absltest
import httpx
from models import ShippingAddress
from services.notification_service import NotificationDispatcher
from services.notification_service import OrderEmail
from services.notification_service import format_address
import testing_utils

_D = decimal.Decimal


def _email(**overrides) -> OrderEmail:
  values = dict(
      to="reader@example.com",
      customer_name="Ada Reader",
      order_id="order-1",
      book_title="Waiting to Fly",
      book_format="hardcover",
      quantity=1,
      subtotal=_D("22.49"),
      tax_amount=_D("1.63"),
      shipping_amount=_D("5.99"),
      total_amount=_D("30.11"),
      shipping_address=ShippingAddress(
          first_name="Ada",
          last_name="Reader",
          address_line1="1 Main St",
          city="Sacramento",
          state="CA",
          postal_code="95814",
      ),
  )
  values.update(overrides)
  return OrderEmail(**values)


class NotificationDispatcherTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.email_api = testing_utils.FakeEmailApi()

  def test_sends_confirmation_and_admin_alert(self) -> None:
    dispatcher = self.email_api.dispatcher()
    results = asyncio.run(dispatcher.dispatch_order_emails(_email()))

    self.assertTrue(all(r.success for r in results))
    self.assertEqual([r.message_id for r in results], ["email_1", "email_2"])
    [confirmation] = self.email_api.sent_to("reader@example.com")
    self.assertEqual(confirmation["subject"], "Order Confirmation - Waiting to Fly")
    self.assertEqual(confirmation["from"], "Waiting to Fly <orders@example.com>")
    self.assertIn("Total: $30.11", confirmation["text"])
    self.assertIn("Sacramento, CA 95814", confirmation["text"])
    [alert] = self.email_api.sent_to("admin@example.com")
    self.assertIn("Ada Reader <reader@example.com>", alert["text"])

  def test_missing_api_key_is_a_warning_not_an_error(self) -> None:
    dispatcher = self.email_api.dispatcher(api_key=None)
    with self.assertLogs("services.notification_service", level="WARNING"):
      results = asyncio.run(dispatcher.dispatch_order_emails(_email()))
    self.assertFalse(any(r.success for r in results))
    self.assertEmpty(self.email_api.sent)

  def test_missing_admin_address_skips_only_the_alert(self) -> None:
    dispatcher = self.email_api.dispatcher(admin_email=None)
    confirmation, alert = asyncio.run(
        dispatcher.dispatch_order_emails(_email())
    )
    self.assertTrue(confirmation.success)
    self.assertFalse(alert.success)
    self.assertEqual(alert.error, "Admin email not configured")

  def test_api_failure_is_reported_not_raised(self) -> None:
    dispatcher = testing_utils.FakeEmailApi(fail=True).dispatcher()
    results = asyncio.run(dispatcher.dispatch_order_emails(_email()))
    self.assertLen(results, 2)
    self.assertFalse(any(r.success for r in results))

  def test_transport_error_is_reported_not_raised(self) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
      raise httpx.ConnectError("connection refused", request=request)

    dispatcher = NotificationDispatcher(
        "re_test_123",
        from_address="orders@example.com",
        from_name="Waiting to Fly",
        admin_email="admin@example.com",
        transport=httpx.MockTransport(refuse),
    )
    results = asyncio.run(dispatcher.dispatch_order_emails(_email()))
    self.assertFalse(any(r.success for r in results))
    self.assertIn("connection refused", results[0].error)

  def test_format_address_skips_empty_lines(self) -> None:
    self.assertEqual(
        format_address(
            ShippingAddress(
                first_name="Ada",
                address_line1="1 Main St",
                city="Sacramento",
                state="CA",
                postal_code="95814",
            )
        ),
        "Ada\n1 Main St\nSacramento, CA 95814\nUS",
    )


if __name__ == "__main__":
  absltest.main()
