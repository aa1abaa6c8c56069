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

"""Static sales tax estimate used for display and as the remote fallback.

The table is state-level US sales tax only; anything it does not list,
including every non-US country, falls back to the `OTHER` rate of zero. Both
the checkout pricing and the remote-calculator fallback call `estimate`, so
there is exactly one implementation of the rounding rule.
"""

import decimal
from typing import NamedTuple, Optional

from money import Number
from money import round_money
from money import to_decimal

_D = decimal.Decimal

# Digital editions (ebooks, audiobooks) are exempt in the business's
# jurisdiction. Stored configuration may override this per request.
DIGITAL_PRODUCTS_EXEMPT = True

OTHER = "OTHER"

# Sales tax rates as of 2024, keyed "{country}-{state}".
TAX_RATES = {
    "US-AL": _D("0.04"),
    "US-AK": _D("0.00"),
    "US-AZ": _D("0.056"),
    "US-AR": _D("0.065"),
    "US-CA": _D("0.0725"),
    "US-CO": _D("0.029"),
    "US-CT": _D("0.0635"),
    "US-DE": _D("0.00"),
    "US-FL": _D("0.06"),
    "US-GA": _D("0.04"),
    "US-HI": _D("0.04"),
    "US-ID": _D("0.06"),
    "US-IL": _D("0.0625"),
    "US-IN": _D("0.07"),
    "US-IA": _D("0.06"),
    "US-KS": _D("0.065"),
    "US-KY": _D("0.06"),
    "US-LA": _D("0.045"),
    "US-ME": _D("0.055"),
    "US-MD": _D("0.06"),
    "US-MA": _D("0.0625"),
    "US-MI": _D("0.06"),
    "US-MN": _D("0.06875"),
    "US-MS": _D("0.07"),
    "US-MO": _D("0.04225"),
    "US-MT": _D("0.00"),
    "US-NE": _D("0.055"),
    "US-NV": _D("0.0685"),
    "US-NH": _D("0.00"),
    "US-NJ": _D("0.06625"),
    "US-NM": _D("0.05125"),
    "US-NY": _D("0.04"),
    "US-NC": _D("0.0475"),
    "US-ND": _D("0.05"),
    "US-OH": _D("0.0575"),
    "US-OK": _D("0.045"),
    "US-OR": _D("0.00"),
    "US-PA": _D("0.06"),
    "US-RI": _D("0.07"),
    "US-SC": _D("0.06"),
    "US-SD": _D("0.045"),
    "US-TN": _D("0.07"),
    "US-TX": _D("0.0625"),
    "US-UT": _D("0.047"),
    "US-VT": _D("0.06"),
    "US-VA": _D("0.053"),
    "US-WA": _D("0.065"),
    "US-WV": _D("0.06"),
    "US-WI": _D("0.05"),
    "US-WY": _D("0.04"),
    "US-DC": _D("0.06"),
    OTHER: _D("0.00"),
}

# States that levy no general sales tax.
NO_SALES_TAX_STATES = frozenset({"AK", "DE", "MT", "NH", "OR"})


class TaxEstimate(NamedTuple):
  tax: decimal.Decimal
  rate: decimal.Decimal


def tax_key(country: str, state: Optional[str] = None) -> str:
  if state and country == "US":
    return f"US-{state.upper()}"
  return country


def rate_for(country: str, state: Optional[str] = None) -> decimal.Decimal:
  return TAX_RATES.get(tax_key(country, state), TAX_RATES[OTHER])


def estimate(
    subtotal: Number,
    country: str,
    state: Optional[str] = None,
    is_digital: bool = False,
    digital_exempt: bool = DIGITAL_PRODUCTS_EXEMPT,
) -> TaxEstimate:
  """Estimates sales tax for a subtotal shipped to a location.

  Args:
    subtotal: Pre-tax amount in dollars.
    country: ISO country code of the shipping address.
    state: State or region code; only used for US addresses.
    is_digital: Whether the item is a digital edition.
    digital_exempt: Whether digital editions are exempt from tax.

  Returns:
    The tax rounded half-up to cents, and the rate that was applied.
  """
  if is_digital and digital_exempt:
    return TaxEstimate(tax=_D("0.00"), rate=_D("0"))

  rate = rate_for(country, state)
  tax = round_money(to_decimal(subtotal) * rate)
  return TaxEstimate(tax=tax, rate=rate)


def levies_sales_tax(country: str, state: Optional[str]) -> bool:
  """True for US states known to collect sales tax."""
  if country != "US" or not state:
    return False
  state = state.upper()
  return state not in NO_SALES_TAX_STATES and f"US-{state}" in TAX_RATES
