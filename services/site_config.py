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

"""Typed, cached access to the site configuration stored in the database.

Site configuration values are schema-less JSON in storage. This module is the
boundary where they become typed: every accessor validates the stored shape
and fails closed with `InvalidConfigurationError` rather than handing
unchecked data to pricing code.

`cache` is the process-wide `ConfigCache`. It is populated lazily on first
read of each key, configured with its TTL by the server lifespan, and
invalidated whenever an admin writes a value.
"""

import decimal
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import db
from exceptions import InvalidConfigurationError
from exceptions import InvalidRequestError
from models import BookFormat
from models import BookFormatCatalog
from models import TaxSettings
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

BOOK_FORMATS_KEY = "book_formats"
SHIPPING_PRICE_KEY = "shipping_price"
TAX_SETTINGS_KEY = "tax_settings"
BOOK_INFO_KEY = "book_info"

DEFAULT_BOOK_TITLE = "Waiting to Fly"

# Format keys treated as digital when the catalog entry does not say.
DIGITAL_FORMAT_KEYS = frozenset({"ebook", "audiobook"})

_MISSING = object()


class ConfigCache:
  """Key/value cache whose entries expire after a fixed TTL."""

  def __init__(
      self,
      ttl_seconds: float = 300.0,
      clock: Callable[[], float] = time.monotonic,
  ):
    self.ttl_seconds = ttl_seconds
    self.clock = clock
    self._entries: Dict[str, Tuple[Any, float]] = {}
    self._lock = threading.Lock()

  def configure(self, ttl_seconds: float) -> None:
    with self._lock:
      self.ttl_seconds = ttl_seconds
      self._entries.clear()

  def get(self, key: str, default: Any = None) -> Any:
    with self._lock:
      entry = self._entries.get(key)
      if entry is None:
        return default
      value, stored_at = entry
      if self.clock() - stored_at >= self.ttl_seconds:
        del self._entries[key]
        return default
      return value

  def set(self, key: str, value: Any) -> None:
    with self._lock:
      self._entries[key] = (value, self.clock())

  def invalidate_key(self, key: str) -> None:
    with self._lock:
      self._entries.pop(key, None)

  def invalidate(self) -> None:
    with self._lock:
      self._entries.clear()


# Global cache instance (TTL configured via lifespan)
cache = ConfigCache()


def is_digital_format(key: str, book_format: Optional[BookFormat]) -> bool:
  if book_format is not None and book_format.digital is not None:
    return book_format.digital
  return key in DIGITAL_FORMAT_KEYS


def format_class(key: str, book_format: Optional[BookFormat]) -> str:
  """Discount class of a format: its category, else bundle/standard by key."""
  if book_format is not None and book_format.category:
    return book_format.category
  return "bundle" if "bundle" in key.lower() else "standard"


def _parse_price(raw: Any) -> decimal.Decimal:
  if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
    raise InvalidConfigurationError("Stored shipping price is not a number")
  try:
    price = decimal.Decimal(str(raw))
  except decimal.InvalidOperation as e:
    raise InvalidConfigurationError(
        "Stored shipping price is not a number"
    ) from e
  if not price.is_finite() or price < 0:
    raise InvalidConfigurationError(
        "Stored shipping price must be a non-negative number"
    )
  return price


class SiteConfigService:
  """Reads and writes site configuration through the shared cache."""

  def __init__(self, session: AsyncSession, config_cache: ConfigCache = cache):
    self.session = session
    self.cache = config_cache

  async def get_value(self, key: str) -> Any:
    """Returns the raw stored value for a key, or None if absent."""
    cached = self.cache.get(key, _MISSING)
    if cached is not _MISSING:
      return cached

    entry = await db.get_site_config_entry(self.session, key)
    if entry is None:
      logger.warning("No active site configuration for key %s", key)
      return None

    self.cache.set(key, entry.config_value)
    return entry.config_value

  async def set_value(
      self,
      key: str,
      value: Any,
      description: Optional[str] = None,
      category: Optional[str] = None,
  ) -> db.SiteConfigEntry:
    """Stores a value and drops any cached copy of it.

    Values for the typed keys are checked first, so a bad admin write is
    rejected instead of breaking checkout.

    Raises:
      InvalidRequestError: If a typed key is given a value of the wrong shape.
    """
    try:
      if key == BOOK_FORMATS_KEY:
        BookFormatCatalog.model_validate(value)
      elif key == TAX_SETTINGS_KEY:
        TaxSettings.model_validate(value)
      elif key == SHIPPING_PRICE_KEY:
        _parse_price(value)
    except (ValidationError, InvalidConfigurationError) as e:
      raise InvalidRequestError(
          f"Invalid value for {key}: {e}", field="value"
      ) from e

    entry = await db.save_site_config_entry(
        self.session, key, value, description=description, category=category
    )
    await self.session.commit()
    self.cache.invalidate_key(key)
    return entry

  async def get_book_formats(self) -> BookFormatCatalog:
    """Returns the live format catalog.

    Raises:
      InvalidConfigurationError: If the catalog is missing or malformed.
    """
    raw = await self.get_value(BOOK_FORMATS_KEY)
    if raw is None:
      raise InvalidConfigurationError(
          "Unable to load book formats. Please try again."
      )
    try:
      return BookFormatCatalog.model_validate(raw)
    except ValidationError as e:
      logger.error("Stored book formats are malformed: %s", e)
      raise InvalidConfigurationError("Stored book formats are malformed") from e

  async def get_shipping_price(self) -> decimal.Decimal:
    """Returns the flat shipping price for physical editions (0 if unset)."""
    raw = await self.get_value(SHIPPING_PRICE_KEY)
    if raw is None:
      return decimal.Decimal("0")
    return _parse_price(raw)

  async def get_tax_settings(self) -> TaxSettings:
    raw = await self.get_value(TAX_SETTINGS_KEY)
    if raw is None:
      return TaxSettings()
    try:
      return TaxSettings.model_validate(raw)
    except ValidationError as e:
      raise InvalidConfigurationError("Stored tax settings are malformed") from e

  async def get_book_title(self) -> str:
    raw = await self.get_value(BOOK_INFO_KEY)
    if isinstance(raw, dict) and isinstance(raw.get("title"), str):
      return raw["title"]
    return DEFAULT_BOOK_TITLE
