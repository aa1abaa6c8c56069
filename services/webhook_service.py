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

"""Reconciles payment processor events with stored orders.

Each supported event locates its order through an ordered lookup chain, the
first hit winning, then patches the order and hands off to the notification
dispatcher. A lookup miss is an expected outcome: it is logged and the event
is still acknowledged, since redelivery cannot make a missing order appear.
"""

import dataclasses
import decimal
import logging
from typing import Any, Dict, NamedTuple, Optional, Sequence, Tuple

from enums import MatchedBy
from enums import OrderStatus
from enums import WebhookEventType
from exceptions import StaleOrderError
from models import Order
from models import OrderPatch
from models import ShippingAddress
from models import WebhookEvent
from money import from_cents
from services.notification_service import NotificationDispatcher
from services.notification_service import OrderEmail
from services.order_store import OrderStore
from services.processor_client import ProcessorClient
from services.site_config import DEFAULT_BOOK_TITLE
from services.tax_service import RATE_PLACES
from services.tax_service import TaxService

logger = logging.getLogger(__name__)


class OrderMatch(NamedTuple):
  order: Optional[Order]
  matched_by: MatchedBy


@dataclasses.dataclass
class ReconciliationResult:
  """What handling one event did; logged by the webhook route."""

  event_type: str
  matched_by: MatchedBy = MatchedBy.NONE
  order_id: Optional[str] = None
  emails_attempted: bool = False


async def resolve_order(
    store: OrderStore, lookups: Sequence[Tuple[MatchedBy, Optional[str]]]
) -> OrderMatch:
  """Tries each (strategy, key) pair in order; the first hit wins.

  Pairs with an empty key are skipped.
  """
  for matched_by, key in lookups:
    if not key:
      continue
    order = await store.finder(matched_by)(key)
    if order is not None:
      return OrderMatch(order, matched_by)
  return OrderMatch(None, MatchedBy.NONE)


def _object_id(value: Any) -> Optional[str]:
  """Returns the id of a processor reference, expanded or not."""
  if isinstance(value, dict):
    return value.get("id")
  return value or None


def _rate(tax: decimal.Decimal, subtotal: decimal.Decimal) -> decimal.Decimal:
  if tax > 0 and subtotal > 0:
    return (tax / subtotal).quantize(RATE_PLACES)
  return decimal.Decimal("0")


def _address_from_processor(
    details: Optional[Dict[str, Any]],
) -> ShippingAddress:
  """Builds an address from a processor shipping or customer details block."""
  details = details or {}
  address = details.get("address") or {}
  first, _, last = (details.get("name") or "").partition(" ")
  return ShippingAddress(
      first_name=first or None,
      last_name=last or None,
      address_line1=address.get("line1"),
      address_line2=address.get("line2"),
      city=address.get("city"),
      state=address.get("state"),
      postal_code=address.get("postal_code"),
      country=address.get("country") or "US",
      phone=details.get("phone"),
  )


def _address_from_metadata(metadata: Dict[str, str]) -> ShippingAddress:
  return ShippingAddress(
      first_name=metadata.get("shipping_first_name") or None,
      last_name=metadata.get("shipping_last_name") or None,
      address_line1=metadata.get("shipping_address_line1") or None,
      address_line2=metadata.get("shipping_address_line2") or None,
      city=metadata.get("shipping_city") or None,
      state=metadata.get("shipping_state") or None,
      postal_code=metadata.get("shipping_postal_code") or None,
      country=metadata.get("shipping_country") or "US",
      phone=metadata.get("shipping_phone") or None,
  )


def _order_email(
    order: Order,
    fallback_address: Optional[ShippingAddress] = None,
) -> OrderEmail:
  address = order.shipping
  # Hosted checkout collects the address at the processor, not on the order.
  if not address.address_line1 and fallback_address is not None:
    address = fallback_address
  return OrderEmail(
      to=order.email,
      customer_name=order.name or order.email,
      order_id=order.id,
      book_title=order.book_title or DEFAULT_BOOK_TITLE,
      book_format=order.book_format,
      quantity=order.quantity,
      subtotal=order.subtotal,
      tax_amount=order.tax_amount,
      shipping_amount=order.shipping_amount,
      total_amount=order.total_amount,
      shipping_address=address,
      checkout_session_id=order.checkout_session_id,
  )


class WebhookReconciler:
  """Applies verified processor events to the order store."""

  def __init__(
      self,
      store: OrderStore,
      processor: ProcessorClient,
      tax_service: TaxService,
      notifier: NotificationDispatcher,
  ):
    self.store = store
    self.processor = processor
    self.tax_service = tax_service
    self.notifier = notifier

  async def handle(self, event: WebhookEvent) -> ReconciliationResult:
    """Dispatches an event to its handler; unknown types are a no-op."""
    handlers = {
        WebhookEventType.CHECKOUT_COMPLETED.value: self.checkout_completed,
        WebhookEventType.PAYMENT_SUCCEEDED.value: self.payment_succeeded,
        WebhookEventType.PAYMENT_FAILED.value: self.payment_failed,
    }
    handler = handlers.get(event.type)
    if handler is None:
      logger.info("Unhandled event type: %s", event.type)
      return ReconciliationResult(event_type=event.type)
    return await handler(event.data.object)

  async def _apply(self, order: Order, patch: OrderPatch) -> Order:
    """Writes a patch guarded by the version the order was read at.

    A concurrent write is logged and the patch re-applied on top of it.
    """
    try:
      return await self.store.update(
          order.id, patch, expected_version=order.version
      )
    except StaleOrderError:
      logger.warning(
          "Order %s was written concurrently since version %d; re-applying"
          " webhook update",
          order.id,
          order.version,
      )
      return await self.store.update(order.id, patch)

  async def _notify(self, email: OrderEmail) -> None:
    results = await self.notifier.dispatch_order_emails(email)
    failures = [r.error for r in results if not r.success]
    if failures:
      logger.warning(
          "Order %s: %d of %d emails not sent: %s",
          email.order_id,
          len(failures),
          len(results),
          "; ".join(str(f) for f in failures),
      )

  async def checkout_completed(
      self, event_object: Dict[str, Any]
  ) -> ReconciliationResult:
    """Completes the order behind a hosted checkout session.

    The session is re-fetched so the stored amounts come from the processor,
    not from the event payload.

    Raises:
      PaymentProcessorError: If the session cannot be re-fetched.
    """
    result = ReconciliationResult(
        event_type=WebhookEventType.CHECKOUT_COMPLETED.value
    )
    session_id = event_object.get("id")
    checkout_session = await self.processor.retrieve_checkout_session(
        session_id
    )
    metadata = checkout_session.get("metadata") or {}
    payment_intent_id = _object_id(
        checkout_session.get("payment_intent")
        or event_object.get("payment_intent")
    )

    match = await resolve_order(
        self.store,
        [
            (MatchedBy.SESSION_ID, session_id),
            (MatchedBy.METADATA, metadata.get("order_id")),
            (MatchedBy.PAYMENT_INTENT, payment_intent_id),
        ],
    )
    result.matched_by = match.matched_by

    totals = checkout_session.get("total_details") or {}
    subtotal = from_cents(int(checkout_session.get("amount_subtotal") or 0))
    tax = from_cents(int(totals.get("amount_tax") or 0))
    shipping = from_cents(int(totals.get("amount_shipping") or 0))
    total = from_cents(int(checkout_session.get("amount_total") or 0))

    shipping_details = checkout_session.get("shipping_details") or (
        checkout_session.get("collected_information") or {}
    ).get("shipping_details")
    customer_details = checkout_session.get("customer_details") or {}
    processor_address = _address_from_processor(
        shipping_details or customer_details
    )

    if match.order is None:
      logger.warning(
          "No order matched checkout session %s (order_id metadata %r,"
          " payment intent %r); sending emails from event data",
          session_id,
          metadata.get("order_id"),
          payment_intent_id,
      )
      email_address = customer_details.get("email") or checkout_session.get(
          "customer_email"
      )
      if not email_address:
        logger.error(
            "Checkout session %s carries no customer email; nothing to send",
            session_id,
        )
        return result
      quantity = metadata.get("quantity") or "1"
      await self._notify(
          OrderEmail(
              to=email_address,
              customer_name=customer_details.get("name") or email_address,
              order_id=metadata.get("order_id") or session_id,
              book_title=metadata.get("book_title") or DEFAULT_BOOK_TITLE,
              book_format=metadata.get("book_format") or "unknown",
              quantity=int(quantity) if quantity.isdigit() else 1,
              subtotal=subtotal,
              tax_amount=tax,
              shipping_amount=shipping,
              total_amount=total,
              shipping_address=processor_address,
              checkout_session_id=session_id,
          )
      )
      result.emails_attempted = True
      return result

    patch = OrderPatch(
        status=OrderStatus.COMPLETED,
        subtotal=subtotal,
        tax_amount=tax,
        tax_rate=_rate(tax, subtotal),
        shipping_amount=shipping,
        total_amount=total,
    )
    if not match.order.checkout_session_id:
      patch.checkout_session_id = session_id
    if payment_intent_id and not match.order.payment_intent_id:
      patch.payment_intent_id = payment_intent_id

    order = await self._apply(match.order, patch)
    result.order_id = order.id
    logger.info(
        "Order %s completed from checkout session %s (matched by %s,"
        " total %s, tax %s)",
        order.id,
        session_id,
        match.matched_by.value,
        total,
        tax,
    )

    await self._notify(_order_email(order, processor_address))
    result.emails_attempted = True
    return result

  async def payment_succeeded(
      self, event_object: Dict[str, Any]
  ) -> ReconciliationResult:
    """Completes the order behind a payment intent."""
    result = ReconciliationResult(
        event_type=WebhookEventType.PAYMENT_SUCCEEDED.value
    )
    payment_intent_id = event_object.get("id")
    metadata = event_object.get("metadata") or {}

    match = await resolve_order(
        self.store,
        [
            (MatchedBy.PAYMENT_INTENT, payment_intent_id),
            (MatchedBy.METADATA, metadata.get("order_id")),
        ],
    )
    result.matched_by = match.matched_by

    amount_cents = event_object.get("amount_received") or event_object.get(
        "amount"
    )
    total = from_cents(int(amount_cents)) if amount_cents else None

    if match.order is None:
      logger.warning(
          "No order matched payment intent %s (order_id metadata %r)",
          payment_intent_id,
          metadata.get("order_id"),
      )
      email_address = metadata.get("email") or event_object.get(
          "receipt_email"
      )
      if not email_address or total is None:
        return result
      quantity = metadata.get("quantity") or "1"
      shipping = decimal.Decimal(metadata.get("shipping_amount") or "0")
      await self._notify(
          OrderEmail(
              to=email_address,
              customer_name=metadata.get("name") or email_address,
              order_id=metadata.get("order_id") or payment_intent_id,
              book_title=metadata.get("book_title") or DEFAULT_BOOK_TITLE,
              book_format=metadata.get("book_format") or "unknown",
              quantity=int(quantity) if quantity.isdigit() else 1,
              subtotal=total - shipping,
              tax_amount=decimal.Decimal("0.00"),
              shipping_amount=shipping,
              total_amount=total,
              shipping_address=_address_from_metadata(metadata),
          )
      )
      result.emails_attempted = True
      return result

    order = match.order
    calculation_id = metadata.get("tax_calculation_id") or (
        order.tax_calculation_id
    )
    tax = None
    if calculation_id:
      tax = await self.tax_service.retrieve_tax_amount(calculation_id)
    if tax is None:
      tax = order.tax_amount

    patch = OrderPatch(
        status=OrderStatus.COMPLETED,
        tax_amount=tax,
        tax_rate=_rate(tax, order.subtotal),
    )
    if total is not None:
      patch.total_amount = total
    if not order.payment_intent_id:
      patch.payment_intent_id = payment_intent_id

    order = await self._apply(order, patch)
    result.order_id = order.id
    logger.info(
        "Order %s completed from payment intent %s (matched by %s)",
        order.id,
        payment_intent_id,
        match.matched_by.value,
    )

    if order.checkout_session_id:
      logger.info(
          "Order %s was notified by its checkout session; skipping emails",
          order.id,
      )
      return result
    await self._notify(_order_email(order))
    result.emails_attempted = True
    return result

  async def payment_failed(
      self, event_object: Dict[str, Any]
  ) -> ReconciliationResult:
    """Marks the order behind a payment intent as failed. No email."""
    result = ReconciliationResult(
        event_type=WebhookEventType.PAYMENT_FAILED.value
    )
    payment_intent_id = event_object.get("id")
    metadata = event_object.get("metadata") or {}
    match = await resolve_order(
        self.store,
        [
            (MatchedBy.PAYMENT_INTENT, payment_intent_id),
            (MatchedBy.METADATA, metadata.get("order_id")),
        ],
    )
    result.matched_by = match.matched_by
    if match.order is None:
      logger.warning(
          "No order matched failed payment intent %s", payment_intent_id
      )
      return result

    order = await self._apply(
        match.order, OrderPatch(status=OrderStatus.FAILED)
    )
    result.order_id = order.id
    error = (event_object.get("last_payment_error") or {}).get("message")
    logger.info(
        "Order %s payment failed (payment intent %s): %s",
        order.id,
        payment_intent_id,
        error or "no reason given",
    )
    return result
