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

"""Shared fakes and fixtures for the preorder server tests.

The payment processor and the email API are replaced by in-memory fakes
served through `httpx.MockTransport`, so the real clients (form encoding,
headers, error mapping) are exercised end to end without network access.
"""

import asyncio
import decimal
import itertools
import json
import os
import shutil
import tempfile
from typing import Any, Dict, List, Optional, Set, Tuple
import urllib.parse

import db
import httpx
from models import CustomerDetails
from models import ShippingAddress
from services import signatures
from services.notification_service import NotificationDispatcher
from services.processor_client import DIGITAL_TAX_CODE
from services.processor_client import ProcessorClient
from services.site_config import BOOK_FORMATS_KEY
from services.site_config import BOOK_INFO_KEY
from services.site_config import SHIPPING_PRICE_KEY
from services.site_config import TAX_SETTINGS_KEY
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

WEBHOOK_SECRET = "whsec_test_secret"
BOOK_TITLE = "Waiting to Fly"

DEFAULT_FORMATS = {
    "hardcover": {"name": "Hardcover", "price": 24.99},
    "paperback": {"name": "Paperback", "price": 18.99},
    "ebook": {"name": "E-book", "price": 12.99},
    "audiobook": {"name": "Audiobook", "price": 19.99},
    "hardcover_bundle": {"name": "Bundle", "price": 39.99},
}


class TempDatabase:
  """A throwaway SQLite database with the full schema."""

  def __init__(self) -> None:
    self.test_dir = tempfile.mkdtemp()
    self.path = os.path.join(self.test_dir, "test_orders.db")
    # NullPool: connections never outlive the event loop that opened them.
    self.engine = create_async_engine(
        f"sqlite+aiosqlite:///{self.path}", poolclass=NullPool
    )
    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )
    asyncio.run(self._create_schema())

  async def _create_schema(self) -> None:
    async with self.engine.begin() as conn:
      await conn.run_sync(db.Base.metadata.create_all)

  def close(self) -> None:
    asyncio.run(self.engine.dispose())
    shutil.rmtree(self.test_dir)


async def seed_site_config(
    session: AsyncSession,
    formats: Optional[Dict[str, Any]] = None,
    shipping_price: Any = 5.99,
    digital_exempt: bool = True,
) -> None:
  """Writes a catalog, shipping price, tax settings and book info."""
  await db.save_site_config_entry(
      session, BOOK_FORMATS_KEY, formats or DEFAULT_FORMATS
  )
  if shipping_price is not None:
    await db.save_site_config_entry(session, SHIPPING_PRICE_KEY, shipping_price)
  await db.save_site_config_entry(
      session, TAX_SETTINGS_KEY, {"digital_products_exempt": digital_exempt}
  )
  await db.save_site_config_entry(session, BOOK_INFO_KEY, {"title": BOOK_TITLE})
  await session.commit()


def make_customer(
    state: str = "CA",
    email: str = "reader@example.com",
    **overrides: Any,
) -> CustomerDetails:
  address = {
      "first_name": "Ada",
      "last_name": "Reader",
      "address_line1": "1 Main St",
      "city": "Sacramento",
      "state": state,
      "postal_code": "95814",
      "country": "US",
  }
  address.update(overrides)
  return CustomerDetails(email=email, address=ShippingAddress(**address))


def signed_body(event: Dict[str, Any], secret: str = WEBHOOK_SECRET) -> Tuple[
    bytes, str
]:
  """Serializes an event and signs it the way the processor does."""
  body = json.dumps(event).encode("utf-8")
  return body, signatures.sign_payload(body, secret)


def _nested(params: Dict[str, str], prefix: str) -> Dict[str, str]:
  """Collects `prefix[key]` form fields into a flat dict."""
  start = f"{prefix}["
  return {
      key[len(start):-1]: value
      for key, value in params.items()
      if key.startswith(start) and key.endswith("]") and "][" not in key
  }


class FakeProcessor:
  """In-memory stand-in for the processor REST API.

  Tax is charged at `tax_rates[state]` on physical goods. Create calls honor
  `Idempotency-Key` by replaying the first response, and reject a key reused
  with different parameters. Paths listed in `fail_paths` answer HTTP 500 and
  those in `timeout_paths` time out. A path in `lost_response_paths` is
  processed once, then the response is lost to a timeout.
  """

  def __init__(self, tax_rates: Optional[Dict[str, str]] = None) -> None:
    if tax_rates is None:
      tax_rates = {"CA": "0.0725"}
    self.tax_rates = {
        state: decimal.Decimal(rate) for state, rate in tax_rates.items()
    }
    self.requests: List[Dict[str, Any]] = []
    self.tax_calculations: Dict[str, Dict[str, Any]] = {}
    self.payment_intents: Dict[str, Dict[str, Any]] = {}
    self.checkout_sessions: Dict[str, Dict[str, Any]] = {}
    self.fail_paths: Set[str] = set()
    self.timeout_paths: Set[str] = set()
    self.lost_response_paths: Set[str] = set()
    self._replays: Dict[str, Tuple[Dict[str, str], Dict[str, Any]]] = {}
    self._ids = itertools.count(1)
    self.transport = httpx.MockTransport(self.handle)

  def client(self) -> ProcessorClient:
    return ProcessorClient(
        "sk_test_123",
        api_base="https://processor.test",
        transport=self.transport,
    )

  def requests_to(self, method: str, path: str) -> List[Dict[str, Any]]:
    return [
        r for r in self.requests if r["method"] == method and r["path"] == path
    ]

  def add_checkout_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
    self.checkout_sessions[session["id"]] = session
    return session

  def handle(self, request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if request.method == "GET":
      params = dict(request.url.params.multi_items())
    else:
      params = dict(urllib.parse.parse_qsl(request.read().decode("utf-8")))
    self.requests.append({
        "method": request.method,
        "path": path,
        "params": params,
        "headers": dict(request.headers),
    })

    if any(path.startswith(p) for p in self.timeout_paths):
      raise httpx.ReadTimeout("timed out", request=request)
    if any(path.startswith(p) for p in self.fail_paths):
      return httpx.Response(
          500, json={"error": {"message": "processor unavailable"}}
      )

    key = request.headers.get("Idempotency-Key")
    if key and key in self._replays:
      first_params, first_body = self._replays[key]
      if first_params != params:
        return httpx.Response(
            400,
            json={
                "error": {
                    "type": "idempotency_error",
                    "message": (
                        "Keys for idempotent requests can only be used with"
                        " the same parameters they were first used with."
                    ),
                }
            },
        )
      return httpx.Response(200, json=first_body)

    body = self._route(request.method, path, params)
    if body is None:
      return httpx.Response(
          404, json={"error": {"message": f"No such resource: {path}"}}
      )
    if key:
      self._replays[key] = (params, body)
    if path in self.lost_response_paths:
      self.lost_response_paths.discard(path)
      raise httpx.ReadTimeout("timed out", request=request)
    return httpx.Response(200, json=body)

  def _route(
      self, method: str, path: str, params: Dict[str, str]
  ) -> Optional[Dict[str, Any]]:
    parts = path.strip("/").split("/")
    if method == "POST" and path == "/v1/tax/calculations":
      return self._create_tax_calculation(params)
    if method == "POST" and path == "/v1/payment_intents":
      return self._create_payment_intent(params)
    if method == "POST" and path == "/v1/checkout/sessions":
      return self._create_checkout_session(params)
    if method == "GET" and path.startswith("/v1/tax/calculations/"):
      return self.tax_calculations.get(parts[-1])
    if method == "GET" and path.startswith("/v1/payment_intents/"):
      return self.payment_intents.get(parts[-1])
    if method == "GET" and path.startswith("/v1/checkout/sessions/"):
      return self.checkout_sessions.get(parts[-1])
    return None

  def _create_tax_calculation(self, params: Dict[str, str]) -> Dict[str, Any]:
    amount = int(params["line_items[0][amount]"])
    state = params.get("customer_details[address][state]")
    rate = decimal.Decimal("0")
    if params.get("line_items[0][tax_code]") != DIGITAL_TAX_CODE:
      rate = self.tax_rates.get(state, decimal.Decimal("0"))
    tax = int(
        (amount * rate).quantize(
            decimal.Decimal("1"), rounding=decimal.ROUND_HALF_UP
        )
    )
    calculation = {
        "id": f"taxcalc_{next(self._ids)}",
        "object": "tax.calculation",
        "amount_total": amount + tax,
        "tax_amount_exclusive": tax,
        "tax_breakdown": [{"amount": tax, "taxable_amount": amount}],
    }
    self.tax_calculations[calculation["id"]] = calculation
    return calculation

  def _create_payment_intent(self, params: Dict[str, str]) -> Dict[str, Any]:
    n = next(self._ids)
    intent = {
        "id": f"pi_{n}",
        "object": "payment_intent",
        "client_secret": f"pi_{n}_secret_{n}",
        "amount": int(params["amount"]),
        "currency": params.get("currency"),
        "status": "requires_payment_method",
        "receipt_email": params.get("receipt_email"),
        "metadata": _nested(params, "metadata"),
    }
    self.payment_intents[intent["id"]] = intent
    return intent

  def _create_checkout_session(self, params: Dict[str, str]) -> Dict[str, Any]:
    n = next(self._ids)
    session = {
        "id": f"cs_test_{n}",
        "object": "checkout.session",
        "url": f"https://checkout.processor.test/c/cs_test_{n}",
        "customer_email": params.get("customer_email"),
        "metadata": _nested(params, "metadata"),
        "payment_intent": None,
    }
    self.checkout_sessions[session["id"]] = session
    return session


class FakeEmailApi:
  """Records emails posted to the email API."""

  def __init__(self, fail: bool = False) -> None:
    self.fail = fail
    self.sent: List[Dict[str, Any]] = []
    self.transport = httpx.MockTransport(self.handle)

  def dispatcher(
      self,
      api_key: Optional[str] = "re_test_123",
      admin_email: Optional[str] = "admin@example.com",
  ) -> NotificationDispatcher:
    return NotificationDispatcher(
        api_key,
        from_address="orders@example.com",
        from_name="Waiting to Fly",
        admin_email=admin_email,
        api_base="https://email.test",
        transport=self.transport,
    )

  def handle(self, request: httpx.Request) -> httpx.Response:
    if self.fail:
      return httpx.Response(500, json={"message": "email service down"})
    self.sent.append(json.loads(request.read()))
    return httpx.Response(200, json={"id": f"email_{len(self.sent)}"})

  def sent_to(self, address: str) -> List[Dict[str, Any]]:
    return [m for m in self.sent if address in m["to"]]
