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

"""Tests for checkout pricing, payment creation and the checkout flow."""

import asyncio
import decimal
from unittest import mock

from absl.testing import absltest
from enums import CheckoutStep
from enums import OrderStatus
from enums import TaxSource
from exceptions import CheckoutStateError
from exceptions import InvalidRequestError
from exceptions import PaymentProcessorError
from exceptions import PersistenceError
from models import PurchaseRequest
from services.checkout_service import CheckoutService
from services.order_store import OrderStore
from services.site_config import BOOK_FORMATS_KEY
from services.site_config import ConfigCache
from services.site_config import SiteConfigService
from services.tax_service import TaxService
import testing_utils

_D = decimal.Decimal

BASE_URL = "https://shop.test"


class CheckoutServiceTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.database = testing_utils.TempDatabase()
    self.processor = testing_utils.FakeProcessor()

  def tearDown(self) -> None:
    self.database.close()
    super().tearDown()

  def run_checkout(self, fn):
    """Runs `fn(service)` against a seeded database in one event loop."""

    async def runner():
      async with self.database.session_factory() as session:
        await testing_utils.seed_site_config(session)
        client = self.processor.client()
        service = CheckoutService(
            session,
            SiteConfigService(session, config_cache=ConfigCache()),
            OrderStore(session),
            TaxService(client),
            client,
            base_url=BASE_URL,
        )
        return await fn(service)

    return asyncio.run(runner())

  def count_orders(self) -> int:
    async def count():
      async with self.database.session_factory() as session:
        _, total = await OrderStore(session).list_orders()
        return total

    return asyncio.run(count())

  def payment_intent_requests(self):
    return self.processor.requests_to("POST", "/v1/payment_intents")

  # --- Pricing ---

  def test_quote_physical_edition(self) -> None:
    quote = self.run_checkout(
        lambda s: s.quote("hardcover", 1, testing_utils.make_customer().address)
    )
    pricing = quote.pricing
    self.assertEqual(pricing.unit_price, _D("24.99"))
    self.assertEqual(pricing.discount_rate, _D("0.10"))
    self.assertEqual(pricing.subtotal, _D("22.49"))
    self.assertEqual(pricing.discount_amount, _D("2.50"))
    self.assertEqual(pricing.shipping, _D("5.99"))
    self.assertEqual(pricing.tax, _D("1.63"))
    self.assertEqual(pricing.total, _D("30.11"))
    self.assertFalse(pricing.is_digital)
    self.assertEqual(pricing.tax_source, TaxSource.FALLBACK)
    self.assertEqual(quote.book_title, testing_utils.BOOK_TITLE)

  def test_bundle_discount(self) -> None:
    quote = self.run_checkout(lambda s: s.quote("hardcover_bundle", 1))
    self.assertEqual(quote.pricing.discount_rate, _D("0.20"))
    # 39.99 * 0.8 = 31.992
    self.assertEqual(quote.pricing.subtotal, _D("31.99"))

  def test_quantity_multiplies_before_rounding(self) -> None:
    quote = self.run_checkout(lambda s: s.quote("paperback", 3))
    # 18.99 * 3 * 0.9 = 51.273
    self.assertEqual(quote.pricing.subtotal, _D("51.27"))

  def test_digital_editions_have_no_shipping_or_tax(self) -> None:
    for book_format in ("ebook", "audiobook"):
      with self.subTest(book_format=book_format):
        quote = self.run_checkout(
            lambda s, f=book_format: s.quote(
                f, 1, testing_utils.make_customer().address
            )
        )
        self.assertTrue(quote.pricing.is_digital)
        self.assertEqual(quote.pricing.shipping, _D("0.00"))
        self.assertEqual(quote.pricing.tax, _D("0.00"))
        self.assertEqual(quote.pricing.total, quote.pricing.subtotal)

  def test_unknown_format_is_rejected(self) -> None:
    with self.assertRaises(InvalidRequestError) as ctx:
      self.run_checkout(lambda s: s.quote("poster", 1))
    self.assertEqual(ctx.exception.field, "bookFormat")
    self.assertIn("hardcover", ctx.exception.message)

  def test_quantity_bounds(self) -> None:
    for quantity in (0, 101):
      with self.subTest(quantity=quantity):
        with self.assertRaises(InvalidRequestError) as ctx:
          self.run_checkout(lambda s, q=quantity: s.quote("hardcover", q))
        self.assertEqual(ctx.exception.field, "quantity")

  # --- Direct payment endpoints ---

  def test_create_payment_intent_prices_server_side(self) -> None:
    request = PurchaseRequest.model_validate({
        "bookFormat": "hardcover",
        "quantity": 1,
        "price": 0.01,
        "total": 0.01,
        "customer": testing_utils.make_customer().model_dump(),
    })
    response = self.run_checkout(lambda s: s.create_payment_intent(request))

    self.assertEqual(response.total, _D("30.11"))
    self.assertEqual(response.tax, _D("1.63"))
    self.assertEqual(response.tax_source, TaxSource.REMOTE)
    [intent] = self.processor.payment_intents.values()
    self.assertEqual(intent["amount"], 3011)
    self.assertEqual(intent["metadata"]["order_id"], response.order_id)
    self.assertEqual(response.client_secret, intent["client_secret"])

    [call] = self.payment_intent_requests()
    self.assertIn("hooks[inputs][tax][calculation]", call["params"])

    order = self.run_checkout(lambda s: s.order_store.find_by_id(response.order_id))
    self.assertEqual(order.status, OrderStatus.PENDING)
    self.assertEqual(order.payment_intent_id, intent["id"])
    self.assertIsNone(order.checkout_session_id)
    self.assertEqual(order.total_amount, _D("30.11"))
    self.assertEqual(order.shipping.city, "Sacramento")

  def test_tax_outage_falls_back_and_still_opens_payment(self) -> None:
    self.processor.fail_paths.add("/v1/tax/calculations")
    request = PurchaseRequest(
        book_format="hardcover", customer=testing_utils.make_customer()
    )
    response = self.run_checkout(lambda s: s.create_payment_intent(request))
    self.assertEqual(response.tax_source, TaxSource.FALLBACK)
    self.assertEqual(response.total, _D("30.11"))
    [call] = self.payment_intent_requests()
    self.assertNotIn("hooks[inputs][tax][calculation]", call["params"])

  def test_payment_processor_failure_writes_no_order(self) -> None:
    self.processor.fail_paths.add("/v1/payment_intents")
    request = PurchaseRequest(
        book_format="hardcover", customer=testing_utils.make_customer()
    )
    with self.assertRaises(PaymentProcessorError):
      self.run_checkout(lambda s: s.create_payment_intent(request))
    self.assertEqual(self.count_orders(), 0)

  def test_missing_required_field_has_no_side_effects(self) -> None:
    request = PurchaseRequest(
        book_format="hardcover",
        customer=testing_utils.make_customer(city=""),
    )
    with self.assertRaises(InvalidRequestError) as ctx:
      self.run_checkout(lambda s: s.create_payment_intent(request))
    self.assertEqual(ctx.exception.field, "city")
    self.assertEmpty(self.processor.requests)
    self.assertEqual(self.count_orders(), 0)

  def test_create_checkout_session(self) -> None:
    request = PurchaseRequest(
        book_format="hardcover",
        quantity=2,
        customer=testing_utils.make_customer(),
    )
    response = self.run_checkout(lambda s: s.create_checkout_session(request))

    self.assertTrue(response.session_id.startswith("cs_test_"))
    self.assertEqual(
        response.redirect_url,
        f"https://checkout.processor.test/c/{response.session_id}",
    )
    [call] = self.processor.requests_to("POST", "/v1/checkout/sessions")
    params = call["params"]
    # 24.99 * 2 * 0.9 = 44.982 -> 44.98, 22.49 per copy
    self.assertEqual(params["line_items[0][price_data][unit_amount]"], "2249")
    self.assertEqual(params["line_items[0][quantity]"], "2")
    self.assertEqual(params["automatic_tax[enabled]"], "true")
    self.assertEqual(
        params[
            "shipping_options[0][shipping_rate_data][fixed_amount][amount]"
        ],
        "599",
    )
    self.assertEqual(params["metadata[order_id]"], response.order_id)
    self.assertEqual(
        params["success_url"],
        f"{BASE_URL}/order-success?session_id={{CHECKOUT_SESSION_ID}}",
    )

    order = self.run_checkout(lambda s: s.order_store.find_by_id(response.order_id))
    self.assertEqual(order.checkout_session_id, response.session_id)
    self.assertIsNone(order.payment_intent_id)
    self.assertEqual(order.subtotal, _D("44.98"))
    self.assertEqual(order.tax_amount, _D("0.00"))
    self.assertEqual(order.total_amount, _D("50.97"))

  def test_digital_checkout_session_has_no_shipping_option(self) -> None:
    request = PurchaseRequest(
        book_format="ebook", customer=testing_utils.make_customer()
    )
    self.run_checkout(lambda s: s.create_checkout_session(request))
    [call] = self.processor.requests_to("POST", "/v1/checkout/sessions")
    self.assertFalse(
        any(k.startswith("shipping_options") for k in call["params"])
    )

  def test_update_order_status(self) -> None:
    async def pay_then_nudge(service):
      response = await service.create_payment_intent(
          PurchaseRequest(
              book_format="paperback", customer=testing_utils.make_customer()
          )
      )
      updated = await service.update_order_status(
          response.payment_intent_id, OrderStatus.COMPLETED
      )
      missing = await service.update_order_status(
          "pi_unknown", OrderStatus.COMPLETED
      )
      order = await service.order_store.find_by_id(response.order_id)
      return updated, missing, order

    updated, missing, order = self.run_checkout(pay_then_nudge)
    self.assertTrue(updated)
    self.assertFalse(missing)
    self.assertEqual(order.status, OrderStatus.COMPLETED)
    self.assertIsNotNone(order.payment_completed_at)

  def test_update_order_status_requires_fields(self) -> None:
    with self.assertRaises(InvalidRequestError):
      self.run_checkout(
          lambda s: s.update_order_status(None, OrderStatus.COMPLETED)
      )

  # --- Checkout flow ---

  async def _to_payment(self, service, book_format="hardcover", quantity=1):
    flow = await service.start_checkout(book_format, quantity)
    await service.continue_to_shipping(flow.id)
    return await service.submit_shipping(
        flow.id, testing_utils.make_customer()
    )

  def test_flow_reaches_payment_with_authoritative_pricing(self) -> None:
    flow = self.run_checkout(self._to_payment)
    self.assertEqual(flow.step, CheckoutStep.PAYMENT)
    self.assertEqual(
        flow.completed_steps,
        [CheckoutStep.ORDER_DETAILS, CheckoutStep.SHIPPING_ADDRESS],
    )
    self.assertEqual(flow.pricing.tax_source, TaxSource.REMOTE)
    self.assertEqual(flow.pricing.total, _D("30.11"))
    self.assertEqual(flow.estimate.tax_source, TaxSource.FALLBACK)
    self.assertIsNotNone(flow.client_secret)
    self.assertIsNotNone(flow.order_id)

  def test_reentering_payment_step_reuses_order_and_intent(self) -> None:
    async def submit_three_times(service):
      first = await self._to_payment(service)
      again = await service.submit_shipping(
          first.id, testing_utils.make_customer()
      )
      await service.go_to_step(first.id, CheckoutStep.SHIPPING_ADDRESS)
      third = await service.submit_shipping(
          first.id, testing_utils.make_customer()
      )
      return first, again, third

    first, again, third = self.run_checkout(submit_three_times)
    self.assertEqual(again.client_secret, first.client_secret)
    self.assertEqual(third.order_id, first.order_id)
    self.assertEqual(third.step, CheckoutStep.PAYMENT)
    self.assertLen(self.payment_intent_requests(), 1)
    self.assertLen(self.processor.payment_intents, 1)
    self.assertEqual(self.count_orders(), 1)

  def test_changed_address_opens_a_new_payment(self) -> None:
    async def submit_twice(service):
      first = await self._to_payment(service)
      second = await service.submit_shipping(
          first.id, testing_utils.make_customer(state="OR")
      )
      return first, second

    first, second = self.run_checkout(submit_twice)
    self.assertNotEqual(second.payment_intent_id, first.payment_intent_id)
    self.assertEqual(second.pricing.tax, _D("0.00"))
    self.assertEqual(self.count_orders(), 2)

  def test_returning_to_an_earlier_address_resumes_its_order(self) -> None:
    async def alternate_addresses(service):
      first = await self._to_payment(service)
      second = await service.submit_shipping(
          first.id, testing_utils.make_customer(state="OR")
      )
      third = await service.submit_shipping(
          first.id, testing_utils.make_customer()
      )
      return first, second, third

    first, second, third = self.run_checkout(alternate_addresses)
    self.assertNotEqual(second.order_id, first.order_id)
    self.assertEqual(third.order_id, first.order_id)
    self.assertEqual(third.payment_intent_id, first.payment_intent_id)
    self.assertEqual(third.client_secret, first.client_secret)
    self.assertEqual(third.pricing.total, _D("30.11"))
    self.assertEqual(third.pricing.tax_source, TaxSource.REMOTE)
    self.assertEqual(third.step, CheckoutStep.PAYMENT)
    self.assertLen(self.payment_intent_requests(), 2)
    self.assertLen(
        self.processor.requests_to(
            "GET", f"/v1/payment_intents/{first.payment_intent_id}"
        ),
        1,
    )
    self.assertEqual(self.count_orders(), 2)

  def test_returning_to_an_earlier_selection_resumes_its_order(self) -> None:
    async def alternate_formats(service):
      first = await self._to_payment(service)
      flows = [first]
      for book_format in ("paperback", "hardcover"):
        await service.go_to_step(first.id, CheckoutStep.ORDER_DETAILS)
        await service.update_order_details(first.id, book_format, 1)
        await service.continue_to_shipping(first.id)
        flows.append(
            await service.submit_shipping(
                first.id, testing_utils.make_customer()
            )
        )
      return flows

    first, second, third = self.run_checkout(alternate_formats)
    self.assertEqual(second.pricing.book_format, "paperback")
    self.assertNotEqual(second.order_id, first.order_id)
    self.assertEqual(third.pricing.book_format, "hardcover")
    self.assertEqual(third.order_id, first.order_id)
    self.assertEqual(third.client_secret, first.client_secret)
    self.assertLen(self.payment_intent_requests(), 2)
    self.assertEqual(self.count_orders(), 2)

  def test_retry_after_lost_payment_response_uses_a_fresh_key(self) -> None:
    self.processor.lost_response_paths.add("/v1/payment_intents")

    async def submit_and_retry(service):
      flow = await service.start_checkout("hardcover", 1)
      await service.continue_to_shipping(flow.id)
      with self.assertRaises(PaymentProcessorError):
        await service.submit_shipping(flow.id, testing_utils.make_customer())
      return await service.submit_shipping(
          flow.id, testing_utils.make_customer()
      )

    flow = self.run_checkout(submit_and_retry)
    self.assertEqual(flow.step, CheckoutStep.PAYMENT)
    lost, retried = self.payment_intent_requests()
    # Each attempt carries its own tax calculation.
    self.assertNotEqual(
        lost["params"]["metadata[tax_calculation_id]"],
        retried["params"]["metadata[tax_calculation_id]"],
    )
    self.assertNotEqual(
        lost["headers"]["idempotency-key"],
        retried["headers"]["idempotency-key"],
    )
    self.assertEqual(
        flow.client_secret,
        self.processor.payment_intents[flow.payment_intent_id][
            "client_secret"
        ],
    )
    self.assertEqual(self.count_orders(), 1)

  def test_retry_with_unchanged_request_replays_the_lost_intent(self) -> None:
    self.processor.fail_paths.add("/v1/tax/calculations")
    self.processor.lost_response_paths.add("/v1/payment_intents")

    async def submit_and_retry(service):
      flow = await service.start_checkout("hardcover", 1)
      await service.continue_to_shipping(flow.id)
      with self.assertRaises(PaymentProcessorError):
        await service.submit_shipping(flow.id, testing_utils.make_customer())
      return await service.submit_shipping(
          flow.id, testing_utils.make_customer()
      )

    flow = self.run_checkout(submit_and_retry)
    lost, retried = self.payment_intent_requests()
    self.assertEqual(
        lost["headers"]["idempotency-key"],
        retried["headers"]["idempotency-key"],
    )
    self.assertEqual(list(self.processor.payment_intents), [
        flow.payment_intent_id
    ])
    self.assertEqual(flow.pricing.tax_source, TaxSource.FALLBACK)
    self.assertEqual(self.count_orders(), 1)

  def test_retry_after_checkout_save_failure_resumes_the_order(self) -> None:
    async def submit_and_retry(service):
      flow = await service.start_checkout("hardcover", 1)
      await service.continue_to_shipping(flow.id)
      with mock.patch.object(
          service,
          "_save_flow",
          side_effect=PersistenceError("Failed to save checkout"),
      ):
        with self.assertRaises(PersistenceError):
          await service.submit_shipping(
              flow.id, testing_utils.make_customer()
          )
      return await service.submit_shipping(
          flow.id, testing_utils.make_customer()
      )

    flow = self.run_checkout(submit_and_retry)
    self.assertEqual(flow.step, CheckoutStep.PAYMENT)
    self.assertEqual(
        flow.client_secret,
        self.processor.payment_intents[flow.payment_intent_id][
            "client_secret"
        ],
    )
    self.assertEqual(flow.pricing.total, _D("30.11"))
    self.assertLen(self.payment_intent_requests(), 1)
    self.assertEqual(self.count_orders(), 1)

  def test_paid_order_is_not_resumed(self) -> None:
    async def pay_then_resubmit(service):
      flow = await self._to_payment(service)
      await service.update_order_status(
          flow.payment_intent_id, OrderStatus.COMPLETED
      )
      await service.submit_shipping(
          flow.id, testing_utils.make_customer(state="OR")
      )
      await service.submit_shipping(flow.id, testing_utils.make_customer())

    with self.assertRaisesRegex(CheckoutStateError, "already been paid"):
      self.run_checkout(pay_then_resubmit)

  def test_backward_navigation_keeps_data(self) -> None:
    async def go_back(service):
      flow = await self._to_payment(service)
      return await service.go_to_step(flow.id, CheckoutStep.ORDER_DETAILS)

    flow = self.run_checkout(go_back)
    self.assertEqual(flow.step, CheckoutStep.ORDER_DETAILS)
    self.assertEqual(flow.book_format, "hardcover")
    self.assertEqual(flow.customer.address.city, "Sacramento")
    self.assertIsNotNone(flow.client_secret)

  def test_cannot_skip_ahead(self) -> None:
    async def skip(service):
      flow = await service.start_checkout("hardcover", 1)
      await service.go_to_step(flow.id, CheckoutStep.PAYMENT)

    with self.assertRaises(CheckoutStateError):
      self.run_checkout(skip)

  def test_shipping_requires_completed_order_details(self) -> None:
    async def submit_early(service):
      flow = await service.start_checkout("hardcover", 1)
      await service.submit_shipping(flow.id, testing_utils.make_customer())

    with self.assertRaises(CheckoutStateError):
      self.run_checkout(submit_early)
    self.assertEmpty(self.payment_intent_requests())

  def test_stale_format_is_discarded(self) -> None:
    async def remove_format_then_continue(service):
      flow = await service.start_checkout("paperback", 1)
      catalog = dict(testing_utils.DEFAULT_FORMATS)
      del catalog["paperback"]
      await service.site_config.set_value(BOOK_FORMATS_KEY, catalog)
      try:
        await service.continue_to_shipping(flow.id)
      except InvalidRequestError as e:
        return e, await service.get_flow(flow.id)
      return None, None

    error, flow = self.run_checkout(remove_format_then_continue)
    self.assertIsNotNone(error)
    self.assertEqual(error.field, "bookFormat")
    self.assertIn("no longer available", error.message)
    self.assertIsNone(flow.book_format)
    self.assertEqual(flow.step, CheckoutStep.ORDER_DETAILS)

  def test_processor_failure_keeps_flow_on_shipping_step(self) -> None:
    self.processor.fail_paths.add("/v1/payment_intents")

    async def try_payment(service):
      flow = await service.start_checkout("hardcover", 1)
      await service.continue_to_shipping(flow.id)
      try:
        await service.submit_shipping(flow.id, testing_utils.make_customer())
      except PaymentProcessorError:
        pass
      return await service.get_flow(flow.id)

    flow = self.run_checkout(try_payment)
    self.assertEqual(flow.step, CheckoutStep.SHIPPING_ADDRESS)
    self.assertIsNone(flow.client_secret)
    self.assertEqual(self.count_orders(), 0)

  def test_confirm_payment_nudges_status_and_redirects(self) -> None:
    async def pay(service):
      flow = await self._to_payment(service)
      confirmation = await service.confirm_payment(flow.id, "succeeded")
      order = await service.order_store.find_by_id(flow.order_id)
      return flow, confirmation, order

    flow, confirmation, order = self.run_checkout(pay)
    self.assertEqual(
        confirmation.redirect_url,
        f"{BASE_URL}/order-success?payment_intent={flow.payment_intent_id}",
    )
    self.assertTrue(confirmation.status_updated)
    self.assertEqual(order.status, OrderStatus.COMPLETED)

  def test_confirmed_flow_is_closed(self) -> None:
    async def pay_then_edit(service):
      flow = await self._to_payment(service)
      await service.confirm_payment(flow.id, "succeeded")
      await service.go_to_step(flow.id, CheckoutStep.ORDER_DETAILS)

    with self.assertRaises(CheckoutStateError):
      self.run_checkout(pay_then_edit)

  def test_unconfirmed_payment_is_an_inline_error(self) -> None:
    async def decline(service):
      flow = await self._to_payment(service)
      try:
        await service.confirm_payment(flow.id, "requires_payment_method")
      except PaymentProcessorError as e:
        return e, await service.get_flow(flow.id)
      return None, None

    error, flow = self.run_checkout(decline)
    self.assertEqual(error.status_code, 402)
    self.assertEqual(flow.step, CheckoutStep.PAYMENT)
    self.assertIsNone(flow.redirect_url)


if __name__ == "__main__":
  absltest.main()
