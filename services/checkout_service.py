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

"""Checkout service for pricing selections and opening payments.

This module provides the `CheckoutService` class, which encapsulates the
business logic of the preorder checkout: pricing a format selection from the
server's own catalog, opening a processor payment intent or hosted checkout
session, writing the pending order, and driving the three-step checkout flow
(order details -> shipping address -> payment).

Key responsibilities include:
- Validating the format selection against the live catalog (a format saved in
  an earlier session is discarded if it no longer exists).
- Table-driven discounts and digital/physical shipping rules.
- Local tax estimates for display, replaced by the authoritative figure
  returned alongside the payment intent.
- Idempotent entry to the payment step: the same selection and address reuse
  the existing order and client secret.
- Best-effort status nudges after client-side payment confirmation.
"""

import dataclasses
import decimal
import hashlib
import json
import logging
from typing import Any, Dict, Optional, Tuple
import uuid

import db
from enums import CHECKOUT_STEP_ORDER
from enums import CheckoutStep
from enums import OrderStatus
from enums import TaxSource
from exceptions import CheckoutStateError
from exceptions import InvalidRequestError
from exceptions import PaymentProcessorError
from exceptions import ResourceNotFoundError
from models import BookFormat
from models import CheckoutFlow
from models import CheckoutSessionResponse
from models import CustomerDetails
from models import Order
from models import OrderDraft
from models import OrderPatch
from models import PaymentConfirmation
from models import PaymentIntentResponse
from models import PricingSummary
from models import PurchaseRequest
from models import ShippingAddress
from models import TaxSettings
from money import round_money
from money import to_cents
from services import tax_estimator
from services.order_store import OrderStore
from services.processor_client import DIGITAL_TAX_CODE
from services.processor_client import PHYSICAL_TAX_CODE
from services.processor_client import ProcessorClient
from services.site_config import SiteConfigService
from services.site_config import format_class
from services.site_config import is_digital_format
from services.tax_service import TaxService
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_D = decimal.Decimal

# Discount applied to the list price, by format class.
DISCOUNT_RATES = {
    "bundle": _D("0.20"),
    "standard": _D("0.10"),
}

MIN_QUANTITY = 1
MAX_QUANTITY = 100

# (model attribute path, API field name, label) of required shipping fields.
REQUIRED_SHIPPING_FIELDS = (
    ("email", "email", "Email"),
    ("address.first_name", "firstName", "First name"),
    ("address.last_name", "lastName", "Last name"),
    ("address.address_line1", "addressLine1", "Address line 1"),
    ("address.city", "city", "City"),
    ("address.state", "state", "State"),
    ("address.postal_code", "postalCode", "Postal code"),
)

# Payment intent statuses the client may report after a confirmed payment.
CONFIRMED_PAYMENT_STATUSES = frozenset({"succeeded", "processing"})


@dataclasses.dataclass
class Quote:
  """A priced selection plus the facts needed to open a payment for it."""

  pricing: PricingSummary
  book_format: BookFormat
  book_title: str
  tax_settings: TaxSettings


class CheckoutService:
  """Service for pricing, opening payments and running checkout flows."""

  def __init__(
      self,
      session: AsyncSession,
      site_config: SiteConfigService,
      order_store: OrderStore,
      tax_service: TaxService,
      processor: ProcessorClient,
      base_url: str,
      currency: str = "usd",
  ):
    self.session = session
    self.site_config = site_config
    self.order_store = order_store
    self.tax_service = tax_service
    self.processor = processor
    self.base_url = base_url.rstrip("/")
    self.currency = currency

  def _compute_hash(self, data: Any) -> str:
    """Computes SHA256 hash of the JSON-serialized data."""
    # sort_keys=True ensures deterministic hashing for dicts
    json_str = json.dumps(data, sort_keys=True)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()

  # --- Pricing ---

  def _validate_quantity(self, quantity: int) -> None:
    if not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
      raise InvalidRequestError(
          f"Quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}",
          field="quantity",
      )

  async def validate_selection(
      self, book_format: Optional[str], quantity: int
  ) -> BookFormat:
    """Checks a format key against the live catalog and the quantity bounds."""
    if not book_format or not book_format.strip():
      raise InvalidRequestError("Book format is required", field="bookFormat")
    catalog = await self.site_config.get_book_formats()
    selected = catalog.get(book_format)
    if selected is None:
      raise InvalidRequestError(
          f'Invalid book format "{book_format}". Available formats:'
          f" {', '.join(catalog.keys())}",
          field="bookFormat",
      )
    self._validate_quantity(quantity)
    return selected

  async def quote(
      self,
      book_format: Optional[str],
      quantity: int,
      address: Optional[ShippingAddress] = None,
  ) -> Quote:
    """Prices a selection with the local tax estimate.

    Args:
      book_format: Catalog key of the selected format.
      quantity: Number of copies.
      address: Shipping address used for the tax estimate; without one the
        estimate carries no tax.

    Returns:
      The estimate. Client-supplied prices never enter this calculation.
    """
    selected = await self.validate_selection(book_format, quantity)
    address = address or ShippingAddress()
    tax_settings = await self.site_config.get_tax_settings()
    is_digital = is_digital_format(book_format, selected)

    rate = DISCOUNT_RATES.get(
        format_class(book_format, selected), DISCOUNT_RATES["standard"]
    )
    gross = round_money(selected.price * quantity)
    subtotal = round_money(selected.price * quantity * (1 - rate))

    # Digital formats never ship.
    shipping = _D("0.00")
    if not is_digital:
      shipping = round_money(await self.site_config.get_shipping_price())

    estimate = tax_estimator.estimate(
        subtotal,
        address.country,
        address.state,
        is_digital=is_digital,
        digital_exempt=tax_settings.digital_products_exempt,
    )

    pricing = PricingSummary(
        book_format=book_format,
        quantity=quantity,
        unit_price=round_money(selected.price),
        discount_rate=rate,
        discount_amount=gross - subtotal,
        subtotal=subtotal,
        shipping=shipping,
        tax=estimate.tax,
        tax_rate=estimate.rate,
        total=subtotal + shipping + estimate.tax,
        is_digital=is_digital,
        tax_source=TaxSource.FALLBACK,
    )
    return Quote(
        pricing=pricing,
        book_format=selected,
        book_title=await self.site_config.get_book_title(),
        tax_settings=tax_settings,
    )

  async def _authoritative_pricing(
      self, quote: Quote, address: ShippingAddress
  ) -> PricingSummary:
    """Replaces the estimated tax with the remote (or fallback) figure."""
    pricing = quote.pricing
    calculation = await self.tax_service.calculate(
        pricing.subtotal,
        address,
        is_digital=pricing.is_digital,
        digital_exempt=quote.tax_settings.digital_products_exempt,
    )
    return pricing.model_copy(
        update={
            "tax": calculation.tax,
            "tax_rate": calculation.tax_rate,
            "total": pricing.subtotal + pricing.shipping + calculation.tax,
            "tax_source": calculation.source,
            "calculation_id": calculation.calculation_id,
        }
    )

  # --- Opening payments ---

  def _validate_customer(self, customer: Optional[CustomerDetails]) -> None:
    if customer is None:
      raise InvalidRequestError("Shipping details are required", field="email")
    for path, field, label in REQUIRED_SHIPPING_FIELDS:
      value: Any = customer
      for attr in path.split("."):
        value = getattr(value, attr)
      if not value or not str(value).strip():
        raise InvalidRequestError(f"{label} is required", field=field)

  def _order_metadata(
      self,
      order_id: str,
      quote: Quote,
      customer: CustomerDetails,
      pricing: PricingSummary,
  ) -> Dict[str, str]:
    address = customer.address
    return {
        "order_id": order_id,
        "email": customer.email or "",
        "name": customer.display_name(),
        "book_format": pricing.book_format,
        "book_title": quote.book_title,
        "quantity": str(pricing.quantity),
        "shipping_amount": str(pricing.shipping),
        "tax_calculation_id": pricing.calculation_id or "",
        "shipping_first_name": address.first_name or "",
        "shipping_last_name": address.last_name or "",
        "shipping_address_line1": address.address_line1 or "",
        "shipping_address_line2": address.address_line2 or "",
        "shipping_city": address.city or "",
        "shipping_state": address.state or "",
        "shipping_postal_code": address.postal_code or "",
        "shipping_country": address.country,
        "shipping_phone": address.phone or "",
    }

  def _draft(
      self,
      order_id: str,
      quote: Quote,
      customer: CustomerDetails,
      pricing: PricingSummary,
      **processor_ids: Optional[str],
  ) -> OrderDraft:
    return OrderDraft(
        id=order_id,
        email=customer.email,
        name=customer.display_name(),
        book_format=pricing.book_format,
        book_title=quote.book_title,
        quantity=pricing.quantity,
        subtotal=pricing.subtotal,
        tax_amount=pricing.tax,
        tax_rate=pricing.tax_rate,
        shipping_amount=pricing.shipping,
        total_amount=pricing.total,
        shipping=customer.address,
        tax_calculation_id=pricing.calculation_id,
        **processor_ids,
    )

  async def open_payment_intent(
      self,
      quote: Quote,
      customer: CustomerDetails,
      order_id: Optional[str] = None,
      idempotency_key: Optional[str] = None,
  ) -> Tuple[Order, str, PricingSummary]:
    """Creates a processor payment intent and its pending order.

    The order id is chosen first and sent as metadata, so the order is written
    already holding its payment intent id.

    Returns:
      The pending order, the client secret, and the authoritative pricing.

    Raises:
      PaymentProcessorError: If the processor rejects or cannot be reached.
      PersistenceError: If the order cannot be written.
    """
    order_id = order_id or str(uuid.uuid4())
    pricing = await self._authoritative_pricing(quote, customer.address)

    request = {
        "amount_cents": to_cents(pricing.total),
        "currency": self.currency,
        "metadata": self._order_metadata(order_id, quote, customer, pricing),
        "receipt_email": customer.email,
        "tax_calculation_id": (
            pricing.calculation_id
            if pricing.tax_source == TaxSource.REMOTE
            else None
        ),
    }
    if idempotency_key:
      # The processor only replays a key for identical parameters.
      digest = self._compute_hash(request)[:16]
      idempotency_key = f"{idempotency_key}-{digest}"
    intent = await self.processor.create_payment_intent(
        **request, idempotency_key=idempotency_key
    )
    client_secret = intent.get("client_secret")
    if not intent.get("id") or not client_secret:
      raise PaymentProcessorError("Payment intent response is incomplete")

    order = await self.order_store.create(
        self._draft(
            order_id, quote, customer, pricing, payment_intent_id=intent["id"]
        )
    )
    logger.info(
        "Payment intent %s opened for order %s (total %s, tax source %s)",
        intent["id"],
        order.id,
        pricing.total,
        pricing.tax_source.value,
    )
    return order, client_secret, pricing

  async def _resume_payment(
      self, order: Order, quote: Quote
  ) -> Tuple[Order, str, PricingSummary]:
    """Picks up a pending order's payment intent instead of opening another.

    The pricing returned is the one charged on the order, including the tax
    that was authoritative when the intent was opened.

    Raises:
      CheckoutStateError: If the order is already paid or its intent was
        cancelled.
      PaymentProcessorError: If the intent cannot be retrieved.
    """
    if order.status == OrderStatus.COMPLETED:
      raise CheckoutStateError(f"Order {order.id} has already been paid")
    if not order.payment_intent_id:
      raise PaymentProcessorError(
          f"Order {order.id} has no payment intent to resume"
      )
    intent = await self.processor.retrieve_payment_intent(
        order.payment_intent_id
    )
    if intent.get("status") in ("succeeded", "canceled"):
      raise CheckoutStateError(
          f"Payment {order.payment_intent_id} is already {intent['status']}"
      )
    client_secret = intent.get("client_secret")
    if not client_secret:
      raise PaymentProcessorError("Payment intent response is incomplete")

    pricing = quote.pricing.model_copy(
        update={
            "tax": order.tax_amount,
            "tax_rate": order.tax_rate,
            "total": order.total_amount,
            "tax_source": (
                TaxSource.REMOTE
                if order.tax_calculation_id
                else TaxSource.FALLBACK
            ),
            "calculation_id": order.tax_calculation_id,
        }
    )
    logger.info(
        "Resuming payment intent %s for order %s", intent.get("id"), order.id
    )
    return order, client_secret, pricing

  async def create_payment_intent(
      self, request: PurchaseRequest
  ) -> PaymentIntentResponse:
    """Prices a purchase and opens a payment intent for it."""
    self._validate_customer(request.customer)
    quote = await self.quote(
        request.book_format, request.quantity, request.customer.address
    )
    order, client_secret, pricing = await self.open_payment_intent(
        quote, request.customer
    )
    return PaymentIntentResponse(
        client_secret=client_secret,
        payment_intent_id=order.payment_intent_id,
        order_id=order.id,
        subtotal=pricing.subtotal,
        shipping=pricing.shipping,
        tax=pricing.tax,
        total=pricing.total,
        tax_source=pricing.tax_source,
    )

  async def create_checkout_session(
      self, request: PurchaseRequest
  ) -> CheckoutSessionResponse:
    """Opens a hosted checkout session with automatic tax.

    Tax is left to the processor; the pending order stores the pre-tax amounts
    and the webhook overwrites them with the final figures.
    """
    self._validate_customer(request.customer)
    quote = await self.quote(
        request.book_format, request.quantity, request.customer.address
    )
    pricing = quote.pricing
    customer = request.customer
    order_id = str(uuid.uuid4())
    format_name = quote.book_format.name or pricing.book_format
    quantity = pricing.quantity

    params: Dict[str, Any] = {
        "customer_email": customer.email,
        "mode": "payment",
        "payment_method_types": ["card"],
        "line_items": [{
            "price_data": {
                "currency": self.currency,
                "product_data": {
                    "name": (
                        f"{format_name} (x{quantity})"
                        if quantity > 1
                        else format_name
                    ),
                    "description": (
                        f"{quantity} x {format_name}"
                        if quantity > 1
                        else format_name
                    ),
                    "metadata": {
                        "book_format": pricing.book_format,
                        "book_title": quote.book_title,
                    },
                    "tax_code": (
                        DIGITAL_TAX_CODE
                        if pricing.is_digital
                        else PHYSICAL_TAX_CODE
                    ),
                },
                "unit_amount": to_cents(pricing.subtotal / quantity),
            },
            "quantity": quantity,
        }],
        "automatic_tax": {"enabled": True},
        "shipping_address_collection": {"allowed_countries": ["US"]},
        "success_url": (
            f"{self.base_url}/order-success?session_id={{CHECKOUT_SESSION_ID}}"
        ),
        "cancel_url": f"{self.base_url}/checkout?cancelled=true",
        "metadata": {
            "order_id": order_id,
            "book_format": pricing.book_format,
            "quantity": str(quantity),
            "book_title": quote.book_title,
        },
        "allow_promotion_codes": True,
    }
    if pricing.shipping > 0:
      params["shipping_options"] = [{
          "shipping_rate_data": {
              "type": "fixed_amount",
              "fixed_amount": {
                  "amount": to_cents(pricing.shipping),
                  "currency": self.currency,
              },
              "display_name": "Standard Shipping",
              "delivery_estimate": {
                  "minimum": {"unit": "business_day", "value": 5},
                  "maximum": {"unit": "business_day", "value": 10},
              },
          }
      }]

    checkout_session = await self.processor.create_checkout_session(
        params, idempotency_key=f"checkout-session-{order_id}"
    )
    if not checkout_session.get("id"):
      raise PaymentProcessorError("Checkout session response is incomplete")

    # Tax is unknown until the processor computes it at payment time.
    pre_tax = pricing.model_copy(
        update={
            "tax": _D("0.00"),
            "tax_rate": _D("0"),
            "total": pricing.subtotal + pricing.shipping,
        }
    )
    order = await self.order_store.create(
        self._draft(
            order_id,
            quote,
            customer,
            pre_tax,
            checkout_session_id=checkout_session["id"],
        )
    )
    logger.info(
        "Checkout session %s created for order %s",
        checkout_session["id"],
        order.id,
    )
    return CheckoutSessionResponse(
        session_id=checkout_session["id"],
        redirect_url=checkout_session.get("url"),
        order_id=order.id,
    )

  async def update_order_status(
      self, payment_intent_id: Optional[str], status: Optional[OrderStatus]
  ) -> bool:
    """Applies a client-reported payment status to the matching order.

    The webhook remains the authoritative status setter; this only lets the
    order reflect a confirmed payment sooner.

    Returns:
      True if an order was updated, False if none matched.
    """
    if not payment_intent_id or not status:
      raise InvalidRequestError(
          "paymentIntentId and status are required",
          field="paymentIntentId" if not payment_intent_id else "status",
      )
    order = await self.order_store.find_by_payment_intent_id(payment_intent_id)
    if order is None:
      logger.warning(
          "Status nudge for unknown payment intent %s ignored",
          payment_intent_id,
      )
      return False
    await self.order_store.update(order.id, OrderPatch(status=status))
    return True

  # --- Checkout flow ---

  async def _load_flow(self, flow_id: str) -> CheckoutFlow:
    data = await db.get_checkout_flow(self.session, flow_id)
    if not data:
      raise ResourceNotFoundError("Checkout not found")
    return CheckoutFlow.model_validate(data)

  async def _save_flow(self, flow: CheckoutFlow) -> CheckoutFlow:
    flow.updated_at = db.utcnow()
    await db.save_checkout_flow(
        self.session,
        flow.id,
        flow.step.value,
        flow.model_dump(mode="json"),
    )
    await self.session.commit()
    return flow

  def _ensure_open(self, flow: CheckoutFlow, action: str) -> None:
    if flow.redirect_url:
      raise CheckoutStateError(f"Cannot {action}: checkout is already paid")

  def _complete_step(self, flow: CheckoutFlow, step: CheckoutStep) -> None:
    if step not in flow.completed_steps:
      flow.completed_steps.append(step)

  async def get_flow(self, flow_id: str) -> CheckoutFlow:
    return await self._load_flow(flow_id)

  async def start_checkout(
      self, book_format: Optional[str], quantity: int = 1
  ) -> CheckoutFlow:
    """Starts a checkout at the order-details step."""
    quote = await self.quote(book_format, quantity)
    now = db.utcnow()
    flow = CheckoutFlow(
        id=str(uuid.uuid4()),
        step=CheckoutStep.ORDER_DETAILS,
        book_format=book_format,
        quantity=quantity,
        estimate=quote.pricing,
        created_at=now,
    )
    logger.info("Checkout %s started for %s x%d", flow.id, book_format, quantity)
    return await self._save_flow(flow)

  async def update_order_details(
      self, flow_id: str, book_format: Optional[str], quantity: int
  ) -> CheckoutFlow:
    """Changes the selection while the order-details step is showing."""
    flow = await self._load_flow(flow_id)
    self._ensure_open(flow, "change order details")
    if flow.step != CheckoutStep.ORDER_DETAILS:
      raise CheckoutStateError("Order details can only change on that step")

    address = flow.customer.address if flow.customer else None
    quote = await self.quote(book_format, quantity, address)
    flow.book_format = book_format
    flow.quantity = quantity
    flow.estimate = quote.pricing
    return await self._save_flow(flow)

  async def _revalidate_format(self, flow: CheckoutFlow) -> None:
    """Discards a stored format that is no longer in the live catalog."""
    catalog = await self.site_config.get_book_formats()
    if flow.book_format and catalog.get(flow.book_format) is not None:
      return
    logger.info(
        "Checkout %s: discarding unavailable format %r",
        flow.id,
        flow.book_format,
    )
    stale = flow.book_format
    flow.book_format = None
    flow.estimate = None
    flow.step = CheckoutStep.ORDER_DETAILS
    flow.completed_steps = []
    await self._save_flow(flow)
    if stale:
      raise InvalidRequestError(
          f'Book format "{stale}" is no longer available. Please choose'
          " another format.",
          field="bookFormat",
      )
    raise InvalidRequestError("Book format is required", field="bookFormat")

  async def continue_to_shipping(self, flow_id: str) -> CheckoutFlow:
    """Moves from order details to the shipping-address step."""
    flow = await self._load_flow(flow_id)
    self._ensure_open(flow, "continue")
    if flow.step != CheckoutStep.ORDER_DETAILS:
      raise CheckoutStateError(
          f"Cannot continue to shipping from step '{flow.step.value}'"
      )
    await self._revalidate_format(flow)
    self._validate_quantity(flow.quantity)

    self._complete_step(flow, CheckoutStep.ORDER_DETAILS)
    flow.step = CheckoutStep.SHIPPING_ADDRESS
    return await self._save_flow(flow)

  async def submit_shipping(
      self, flow_id: str, customer: CustomerDetails
  ) -> CheckoutFlow:
    """Validates shipping details and enters the payment step.

    Entering the payment step creates the pending order and the payment
    intent. Submitting a selection and address seen before in this flow
    resumes the order opened for them.

    Raises:
      CheckoutStateError: If the steps are out of order or the resumed order
        is already paid.
      InvalidRequestError: If a required field is missing or the format is
        no longer available.
      PaymentProcessorError: If the payment intent cannot be created; the
        flow stays on the shipping step.
      PersistenceError: If the order cannot be written.
    """
    flow = await self._load_flow(flow_id)
    self._ensure_open(flow, "submit shipping")
    details_done = CheckoutStep.ORDER_DETAILS in flow.completed_steps
    if not details_done or flow.step not in (
        CheckoutStep.SHIPPING_ADDRESS,
        CheckoutStep.PAYMENT,
    ):
      raise CheckoutStateError("Order details must be completed first")

    self._validate_customer(customer)
    await self._revalidate_format(flow)

    quote = await self.quote(flow.book_format, flow.quantity, customer.address)
    fingerprint = self._compute_hash({
        "book_format": flow.book_format,
        "quantity": flow.quantity,
        "subtotal": str(quote.pricing.subtotal),
        "shipping": str(quote.pricing.shipping),
        "customer": customer.model_dump(mode="json"),
    })
    if (
        flow.payment_fingerprint == fingerprint
        and flow.client_secret
        and flow.order_id
    ):
      logger.info(
          "Checkout %s: reusing payment intent %s",
          flow.id,
          flow.payment_intent_id,
      )
      self._complete_step(flow, CheckoutStep.SHIPPING_ADDRESS)
      flow.step = CheckoutStep.PAYMENT
      return await self._save_flow(flow)

    flow.customer = customer
    flow.estimate = quote.pricing

    # One order per flow, selection, price and address. An order left by an
    # earlier submission or an interrupted one is resumed, never rewritten.
    order_id = str(uuid.uuid5(uuid.NAMESPACE_URL, f"{flow.id}:{fingerprint}"))
    existing = await self.order_store.find_by_id(order_id)
    if existing is not None:
      order, client_secret, pricing = await self._resume_payment(
          existing, quote
      )
    else:
      order, client_secret, pricing = await self.open_payment_intent(
          quote,
          customer,
          order_id=order_id,
          idempotency_key=f"checkout-{order_id}",
      )

    flow.pricing = pricing
    flow.order_id = order.id
    flow.payment_intent_id = order.payment_intent_id
    flow.client_secret = client_secret
    flow.payment_fingerprint = fingerprint
    self._complete_step(flow, CheckoutStep.SHIPPING_ADDRESS)
    flow.step = CheckoutStep.PAYMENT
    return await self._save_flow(flow)

  async def go_to_step(self, flow_id: str, step: CheckoutStep) -> CheckoutFlow:
    """Navigates back to a completed step without discarding data."""
    flow = await self._load_flow(flow_id)
    self._ensure_open(flow, "change step")
    if step != flow.step and step not in flow.completed_steps:
      raise CheckoutStateError(
          f"Step '{step.value}' has not been completed yet"
      )
    if CHECKOUT_STEP_ORDER.index(step) > CHECKOUT_STEP_ORDER.index(flow.step):
      # Forward moves go through the continue actions, which validate.
      raise CheckoutStateError("Use continue to move forward")
    flow.step = step
    return await self._save_flow(flow)

  async def confirm_payment(
      self, flow_id: str, payment_intent_status: str
  ) -> PaymentConfirmation:
    """Finishes a checkout after the client SDK confirmed the payment."""
    flow = await self._load_flow(flow_id)
    if flow.step != CheckoutStep.PAYMENT or not flow.payment_intent_id:
      raise CheckoutStateError("Payment step has not been reached")

    if payment_intent_status not in CONFIRMED_PAYMENT_STATUSES:
      raise PaymentProcessorError(
          f"Payment was not completed (status: {payment_intent_status})",
          code="PAYMENT_NOT_COMPLETED",
          status_code=402,
      )

    status_updated = False
    if payment_intent_status == "succeeded":
      try:
        status_updated = await self.update_order_status(
            flow.payment_intent_id, OrderStatus.COMPLETED
        )
      except Exception as e:  # pylint: disable=broad-exception-caught
        # The payment webhook sets the status authoritatively.
        await self.session.rollback()
        logger.warning(
            "Checkout %s: status nudge for %s failed: %s",
            flow.id,
            flow.payment_intent_id,
            e,
        )

    if not flow.redirect_url:
      flow.redirect_url = (
          f"{self.base_url}/order-success?payment_intent="
          f"{flow.payment_intent_id}"
      )
      self._complete_step(flow, CheckoutStep.PAYMENT)
      await self._save_flow(flow)

    return PaymentConfirmation(
        redirect_url=flow.redirect_url,
        order_id=flow.order_id,
        status_updated=status_updated,
    )
