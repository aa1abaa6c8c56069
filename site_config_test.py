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

"""Tests for typed site configuration access and its cache."""

import asyncio
import decimal

from absl.testing import absltest
import db
from exceptions import InvalidConfigurationError
from exceptions import InvalidRequestError
from models import BookFormat
from services import site_config
from services.site_config import ConfigCache
from services.site_config import SiteConfigService
import testing_utils

_D = decimal.Decimal


class FakeClock:

  def __init__(self) -> None:
    self.now = 0.0

  def __call__(self) -> float:
    return self.now


class ConfigCacheTest(absltest.TestCase):

  def test_entries_expire_after_ttl(self) -> None:
    clock = FakeClock()
    cache = ConfigCache(ttl_seconds=60, clock=clock)
    cache.set("shipping_price", 5.99)
    clock.now = 59
    self.assertEqual(cache.get("shipping_price"), 5.99)
    clock.now = 60
    self.assertIsNone(cache.get("shipping_price"))

  def test_invalidate(self) -> None:
    cache = ConfigCache()
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate_key("a")
    self.assertIsNone(cache.get("a"))
    self.assertEqual(cache.get("b"), 2)
    cache.invalidate()
    self.assertIsNone(cache.get("b"))

  def test_configure_resets_entries(self) -> None:
    cache = ConfigCache(ttl_seconds=60)
    cache.set("a", 1)
    cache.configure(10)
    self.assertEqual(cache.ttl_seconds, 10)
    self.assertIsNone(cache.get("a"))


class FormatRulesTest(absltest.TestCase):

  def test_digital_by_key_or_flag(self) -> None:
    self.assertTrue(site_config.is_digital_format("ebook", None))
    self.assertTrue(site_config.is_digital_format("audiobook", None))
    self.assertFalse(site_config.is_digital_format("hardcover", None))
    fmt = BookFormat(name="Print", price=1, digital=True)
    self.assertTrue(site_config.is_digital_format("special", fmt))

  def test_discount_class(self) -> None:
    self.assertEqual(site_config.format_class("hardcover_bundle", None), "bundle")
    self.assertEqual(site_config.format_class("paperback", None), "standard")
    fmt = BookFormat(name="Set", price=1, category="bundle")
    self.assertEqual(site_config.format_class("box_set", fmt), "bundle")


class SiteConfigServiceTest(absltest.TestCase):

  def setUp(self) -> None:
    super().setUp()
    self.database = testing_utils.TempDatabase()
    self.cache = ConfigCache()

  def tearDown(self) -> None:
    self.database.close()
    super().tearDown()

  def run_with_service(self, fn, seed=True, **seed_args):
    async def runner():
      async with self.database.session_factory() as session:
        if seed:
          await testing_utils.seed_site_config(session, **seed_args)
        return await fn(SiteConfigService(session, config_cache=self.cache))

    return asyncio.run(runner())

  def test_typed_reads(self) -> None:
    async def read(service):
      return (
          await service.get_book_formats(),
          await service.get_shipping_price(),
          await service.get_tax_settings(),
          await service.get_book_title(),
      )

    formats, shipping, tax_settings, title = self.run_with_service(read)
    self.assertEqual(formats.get("hardcover").price, _D("24.99"))
    self.assertIsNone(formats.get("poster"))
    self.assertEqual(shipping, _D("5.99"))
    self.assertTrue(tax_settings.digital_products_exempt)
    self.assertEqual(title, testing_utils.BOOK_TITLE)

  def test_missing_catalog_fails_closed(self) -> None:
    with self.assertRaises(InvalidConfigurationError):
      self.run_with_service(lambda s: s.get_book_formats(), seed=False)

  def test_malformed_catalog_fails_closed(self) -> None:
    with self.assertRaises(InvalidConfigurationError):
      self.run_with_service(
          lambda s: s.get_book_formats(),
          formats={"hardcover": {"name": "Hardcover", "price": "free"}},
      )

  def test_missing_shipping_price_is_zero(self) -> None:
    price = self.run_with_service(
        lambda s: s.get_shipping_price(), shipping_price=None
    )
    self.assertEqual(price, _D("0"))

  def test_wrong_shipping_price_type_fails_closed(self) -> None:
    for bad in ({"amount": 5}, True, "NaN", -1):
      with self.subTest(value=bad):
        self.cache.invalidate()
        with self.assertRaises(InvalidConfigurationError):
          self.run_with_service(
              lambda s: s.get_shipping_price(), shipping_price=bad
          )

  def test_reads_are_cached_until_a_write(self) -> None:
    async def read_change_read(service):
      first = await service.get_shipping_price()
      # A write that bypasses the service is not seen while cached.
      await db.save_site_config_entry(service.session, "shipping_price", 7.5)
      await service.session.commit()
      cached = await service.get_shipping_price()
      await service.set_value("shipping_price", 8.25)
      fresh = await service.get_shipping_price()
      return first, cached, fresh

    first, cached, fresh = self.run_with_service(read_change_read)
    self.assertEqual(first, _D("5.99"))
    self.assertEqual(cached, _D("5.99"))
    self.assertEqual(fresh, _D("8.25"))

  def test_set_value_rejects_malformed_typed_values(self) -> None:
    with self.assertRaises(InvalidRequestError):
      self.run_with_service(lambda s: s.set_value("book_formats", {}))
    with self.assertRaises(InvalidRequestError):
      self.run_with_service(lambda s: s.set_value("shipping_price", "cheap"))

  def test_set_value_accepts_untyped_keys(self) -> None:
    async def write_and_read(service):
      await service.set_value("hero_banner", {"text": "Preorder now"})
      return await service.get_value("hero_banner")

    self.assertEqual(
        self.run_with_service(write_and_read), {"text": "Preorder now"}
    )


if __name__ == "__main__":
  absltest.main()
