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

"""Authoritative tax calculation with a local fallback.

The remote calculator is preferred for correctness, but a checkout must
always be able to complete: any processor failure (including a timeout) is
logged and answered with the static-table estimate, flagged as such.
"""

import decimal
import logging
from typing import Optional

from enums import TaxSource
from exceptions import PaymentProcessorError
from models import ShippingAddress
from models import TaxCalculation
from money import from_cents
from money import Number
from money import round_money
from money import to_cents
from services import tax_estimator
from services.processor_client import DIGITAL_TAX_CODE
from services.processor_client import PHYSICAL_TAX_CODE
from services.processor_client import ProcessorClient

logger = logging.getLogger(__name__)

RATE_PLACES = decimal.Decimal("0.000001")


class TaxService:
  """Computes tax for a subtotal shipped to an address."""

  def __init__(
      self,
      processor: ProcessorClient,
      currency: str = "usd",
  ):
    self.processor = processor
    self.currency = currency

  async def calculate(
      self,
      subtotal: Number,
      address: ShippingAddress,
      is_digital: bool = False,
      digital_exempt: bool = tax_estimator.DIGITAL_PRODUCTS_EXEMPT,
  ) -> TaxCalculation:
    """Calculates tax remotely, falling back to the static estimate.

    Args:
      subtotal: Taxable amount in dollars.
      address: Shipping address; country, state, city and postal code are
        sent to the remote calculator.
      is_digital: Whether the item is a digital edition.
      digital_exempt: Digital exemption flag for the fallback estimate.

    Returns:
      The tax calculation. `source` tells whether it is authoritative.
    """
    subtotal = round_money(subtotal)
    tax_code = DIGITAL_TAX_CODE if is_digital else PHYSICAL_TAX_CODE

    try:
      calculation = await self.processor.create_tax_calculation(
          amount_cents=to_cents(subtotal),
          currency=self.currency,
          address={
              # The calculator only needs the postal area; line1 is required
              # by the API but does not affect the result.
              "line1": address.address_line1 or "1 Main St",
              "city": address.city or "City",
              "state": address.state or "",
              "postal_code": address.postal_code,
              "country": address.country,
          },
          tax_code=tax_code,
      )
    except PaymentProcessorError as e:
      logger.warning(
          "Remote tax calculation failed (%s) for %s-%s %s; falling back to"
          " the state rate table",
          e.message,
          address.country,
          address.state,
          address.postal_code,
      )
      return self.fallback(
          subtotal, address, is_digital, digital_exempt, reason=e.message
      )

    tax = from_cents(int(calculation.get("tax_amount_exclusive") or 0))
    rate = decimal.Decimal("0")
    if tax > 0 and subtotal > 0:
      rate = (tax / subtotal).quantize(RATE_PLACES)

    if (
        tax == 0
        and not is_digital
        and tax_estimator.levies_sales_tax(address.country, address.state)
    ):
      logger.warning(
          "Remote tax returned $0 for a physical product in taxable state %s"
          " (zip %s, calculation %s)",
          address.state,
          address.postal_code,
          calculation.get("id"),
      )

    return TaxCalculation(
        subtotal=subtotal,
        tax=tax,
        total=subtotal + tax,
        tax_rate=rate,
        source=TaxSource.REMOTE,
        calculation_id=calculation.get("id"),
        tax_breakdown=calculation.get("tax_breakdown"),
    )

  def fallback(
      self,
      subtotal: Number,
      address: ShippingAddress,
      is_digital: bool = False,
      digital_exempt: bool = tax_estimator.DIGITAL_PRODUCTS_EXEMPT,
      reason: Optional[str] = None,
  ) -> TaxCalculation:
    """Returns the static-table estimate as an estimate-only calculation."""
    subtotal = round_money(subtotal)
    estimate = tax_estimator.estimate(
        subtotal,
        address.country,
        address.state,
        is_digital=is_digital,
        digital_exempt=digital_exempt,
    )
    return TaxCalculation(
        subtotal=subtotal,
        tax=estimate.tax,
        total=subtotal + estimate.tax,
        tax_rate=estimate.rate,
        source=TaxSource.FALLBACK,
        fallback_reason=reason or "Remote tax calculation unavailable",
    )

  async def retrieve_tax_amount(
      self, calculation_id: str
  ) -> Optional[decimal.Decimal]:
    """Looks up the tax amount of an earlier calculation, if still available."""
    try:
      calculation = await self.processor.retrieve_tax_calculation(
          calculation_id
      )
    except PaymentProcessorError as e:
      logger.warning(
          "Could not retrieve tax calculation %s: %s", calculation_id, e.message
      )
      return None
    amount = calculation.get("tax_amount_exclusive")
    if amount is None:
      return None
    return from_cents(int(amount))
