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

"""Helpers for converting between decimal dollars and integer cents."""

import decimal
from typing import Union

CENT = decimal.Decimal("0.01")

Number = Union[decimal.Decimal, int, float, str]


def to_decimal(amount: Number) -> decimal.Decimal:
  """Converts a number to Decimal without binary float artifacts."""
  if isinstance(amount, decimal.Decimal):
    return amount
  return decimal.Decimal(str(amount))


def round_money(amount: Number) -> decimal.Decimal:
  """Rounds to cents, half away from zero."""
  return to_decimal(amount).quantize(CENT, rounding=decimal.ROUND_HALF_UP)


def to_cents(amount: Number) -> int:
  return int(round_money(amount) * 100)


def from_cents(cents: int) -> decimal.Decimal:
  return (decimal.Decimal(cents) / 100).quantize(CENT)
