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

"""Pydantic models for the preorder server.

The API speaks camelCase JSON (matching the storefront client) while the
Python side uses snake_case; every API model accepts either spelling. Money
is carried as `Decimal` dollars and rendered as JSON numbers.
"""

import decimal
from typing import Annotated, Any, Dict, List, Optional

from enums import CheckoutStep
from enums import OrderStatus
from enums import ShippingStatus
from enums import TaxSource
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import PlainSerializer
from pydantic import RootModel
from pydantic import field_validator
from pydantic import model_validator
from pydantic.alias_generators import to_camel

Money = Annotated[
    decimal.Decimal,
    PlainSerializer(float, return_type=float, when_used="json"),
]
Rate = Money


class ApiModel(BaseModel):
  """Base model accepting snake_case or camelCase and emitting camelCase."""

  model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Site configuration ---


class BookFormat(BaseModel):
  """One purchasable edition of the book, as stored in site configuration."""

  name: str
  price: decimal.Decimal = Field(..., ge=0)
  description: str = ""
  digital: Optional[bool] = None
  category: Optional[str] = None


class BookFormatCatalog(RootModel[Dict[str, BookFormat]]):
  """Format key to format mapping; keys are data, not a fixed enum."""

  @field_validator("root")
  @classmethod
  def _not_empty(cls, value: Dict[str, BookFormat]) -> Dict[str, BookFormat]:
    if not value:
      raise ValueError("book format catalog is empty")
    return value

  def get(self, key: Optional[str]) -> Optional[BookFormat]:
    if not key:
      return None
    return self.root.get(key)

  def keys(self) -> List[str]:
    return list(self.root)


class TaxSettings(BaseModel):
  digital_products_exempt: bool = True


# --- Orders ---


class ShippingAddress(ApiModel):
  first_name: Optional[str] = None
  last_name: Optional[str] = None
  address_line1: Optional[str] = None
  address_line2: Optional[str] = None
  city: Optional[str] = None
  state: Optional[str] = None
  postal_code: Optional[str] = None
  country: str = "US"
  phone: Optional[str] = None


class CustomerDetails(ApiModel):
  email: Optional[str] = None
  name: Optional[str] = None
  address: ShippingAddress = Field(default_factory=ShippingAddress)

  def display_name(self) -> str:
    if self.name:
      return self.name
    parts = [self.address.first_name, self.address.last_name]
    return " ".join(p for p in parts if p)


class OrderDraft(BaseModel):
  """Fields supplied when a pending order is first written."""

  id: Optional[str] = None
  email: str
  name: str
  book_format: str
  book_title: Optional[str] = None
  quantity: int = Field(1, ge=1)
  subtotal: decimal.Decimal
  tax_amount: decimal.Decimal = decimal.Decimal("0")
  tax_rate: decimal.Decimal = decimal.Decimal("0")
  shipping_amount: decimal.Decimal = decimal.Decimal("0")
  total_amount: decimal.Decimal
  shipping: ShippingAddress = Field(default_factory=ShippingAddress)
  checkout_session_id: Optional[str] = None
  payment_intent_id: Optional[str] = None
  tax_calculation_id: Optional[str] = None

  @model_validator(mode="after")
  def _exactly_one_processor_id(self) -> "OrderDraft":
    if bool(self.checkout_session_id) == bool(self.payment_intent_id):
      raise ValueError(
          "exactly one of checkout_session_id or payment_intent_id must be"
          " set when an order is created"
      )
    return self


class OrderPatch(BaseModel):
  """Partial update; only explicitly set fields are written."""

  status: Optional[OrderStatus] = None
  shipping_status: Optional[ShippingStatus] = None
  tracking_number: Optional[str] = None
  checkout_session_id: Optional[str] = None
  payment_intent_id: Optional[str] = None
  tax_calculation_id: Optional[str] = None
  subtotal: Optional[decimal.Decimal] = None
  tax_amount: Optional[decimal.Decimal] = None
  tax_rate: Optional[decimal.Decimal] = None
  shipping_amount: Optional[decimal.Decimal] = None
  total_amount: Optional[decimal.Decimal] = None


class Order(ApiModel):
  id: str
  email: str
  name: str
  book_format: str
  book_title: Optional[str] = None
  quantity: int
  subtotal: Money
  tax_amount: Money
  tax_rate: Rate
  shipping_amount: Money
  total_amount: Money
  status: OrderStatus
  shipping_status: ShippingStatus
  tracking_number: Optional[str] = None
  shipping: ShippingAddress
  checkout_session_id: Optional[str] = None
  payment_intent_id: Optional[str] = None
  tax_calculation_id: Optional[str] = None
  created_at: str
  payment_completed_at: Optional[str] = None
  payment_failed_at: Optional[str] = None
  shipped_at: Optional[str] = None
  delivered_at: Optional[str] = None
  updated_at: Optional[str] = None
  version: int = 1


# --- Tax ---


class TaxCalculationRequest(ApiModel):
  subtotal: Optional[decimal.Decimal] = None
  shipping_country: str = "US"
  shipping_state: Optional[str] = None
  shipping_city: Optional[str] = None
  shipping_postal_code: Optional[str] = None
  is_digital: bool = False


class TaxCalculation(ApiModel):
  """Tax for a subtotal, from the remote calculator or the local table."""

  subtotal: Money
  tax: Money
  total: Money
  tax_rate: Rate
  source: TaxSource
  calculation_id: Optional[str] = None
  fallback_reason: Optional[str] = None
  tax_breakdown: Optional[List[Dict[str, Any]]] = None


# --- Checkout ---


class PricingSummary(ApiModel):
  book_format: str
  quantity: int
  unit_price: Money
  discount_rate: Rate
  discount_amount: Money
  subtotal: Money
  shipping: Money
  tax: Money
  tax_rate: Rate
  total: Money
  is_digital: bool
  tax_source: TaxSource = TaxSource.FALLBACK
  calculation_id: Optional[str] = None


class PurchaseRequest(ApiModel):
  """Body of the direct payment-intent and checkout-session endpoints.

  Any price or total the client sends is ignored; the server prices the
  selection from its own format catalog.
  """

  book_format: Optional[str] = None
  quantity: int = 1
  customer: CustomerDetails = Field(default_factory=CustomerDetails)


class PaymentIntentResponse(ApiModel):
  client_secret: str
  payment_intent_id: str
  order_id: str
  subtotal: Money
  shipping: Money
  tax: Money
  total: Money
  tax_source: TaxSource


class CheckoutSessionResponse(ApiModel):
  session_id: str
  redirect_url: Optional[str] = None
  order_id: str


class OrderStatusUpdateRequest(ApiModel):
  payment_intent_id: Optional[str] = None
  status: Optional[OrderStatus] = None


class CheckoutFlow(ApiModel):
  """Server-held state of one multi-step checkout."""

  id: str
  step: CheckoutStep = CheckoutStep.ORDER_DETAILS
  completed_steps: List[CheckoutStep] = Field(default_factory=list)
  book_format: Optional[str] = None
  quantity: int = 1
  customer: Optional[CustomerDetails] = None
  estimate: Optional[PricingSummary] = None
  pricing: Optional[PricingSummary] = None
  order_id: Optional[str] = None
  payment_intent_id: Optional[str] = None
  client_secret: Optional[str] = None
  payment_fingerprint: Optional[str] = None
  redirect_url: Optional[str] = None
  created_at: Optional[str] = None
  updated_at: Optional[str] = None


class OrderDetailsRequest(ApiModel):
  book_format: Optional[str] = None
  quantity: int = 1


class StepRequest(ApiModel):
  step: CheckoutStep


class PaymentConfirmationRequest(ApiModel):
  payment_intent_status: str = "succeeded"


class PaymentConfirmation(ApiModel):
  redirect_url: str
  order_id: Optional[str] = None
  status_updated: bool = False


# --- Admin ---


class OrderAdminUpdate(ApiModel):
  status: Optional[OrderStatus] = None
  shipping_status: Optional[ShippingStatus] = None
  tracking_number: Optional[str] = None


class Pagination(ApiModel):
  page: int
  limit: int
  total: int
  pages: int


class OrderPage(ApiModel):
  data: List[Order]
  pagination: Pagination


class SiteConfigValue(ApiModel):
  key: str
  value: Any
  description: Optional[str] = None
  category: Optional[str] = None


class SiteConfigUpdate(ApiModel):
  value: Any
  description: Optional[str] = None
  category: Optional[str] = None


# --- Webhooks ---


class WebhookEventData(BaseModel):
  model_config = ConfigDict(extra="allow")

  object: Dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
  model_config = ConfigDict(extra="allow")

  id: Optional[str] = None
  type: str
  data: WebhookEventData = Field(default_factory=WebhookEventData)
