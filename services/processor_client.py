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

"""Client for the payment processor's REST API.

The processor speaks a Stripe-compatible API: form-encoded request bodies with
bracketed keys for nested values, bearer-key authentication, amounts in
integer cents, and an `Idempotency-Key` header on create calls. Every failure
(transport error, timeout, non-2xx status) surfaces as a
`PaymentProcessorError` so callers only handle one exception type.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple
import urllib.parse

from exceptions import PaymentProcessorError
import httpx

logger = logging.getLogger(__name__)

# Product tax codes for digital books and general tangible goods.
DIGITAL_TAX_CODE = "txcd_31000000"
PHYSICAL_TAX_CODE = "txcd_99999999"


def encode_form(params: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
  """Flattens nested dicts and lists into bracketed form fields.

  {"a": {"b": 1}, "c": [{"d": True}]} becomes
  [("a[b]", "1"), ("c[0][d]", "true")]. None values are dropped.
  """
  fields = []
  for key, value in params.items():
    name = f"{prefix}[{key}]" if prefix else str(key)
    if value is None:
      continue
    if isinstance(value, dict):
      fields.extend(encode_form(value, name))
    elif isinstance(value, (list, tuple)):
      for index, item in enumerate(value):
        item_name = f"{name}[{index}]"
        if isinstance(item, dict):
          fields.extend(encode_form(item, item_name))
        else:
          fields.append((item_name, _encode_scalar(item)))
    else:
      fields.append((name, _encode_scalar(value)))
  return fields


def _encode_scalar(value: Any) -> str:
  if isinstance(value, bool):
    return "true" if value else "false"
  return str(value)


class ProcessorClient:
  """Thin async wrapper over the processor endpoints this server uses."""

  def __init__(
      self,
      secret_key: Optional[str],
      api_base: str = "https://api.stripe.com",
      timeout_seconds: float = 10.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self.secret_key = secret_key
    self.api_base = api_base.rstrip("/")
    self.timeout = httpx.Timeout(timeout_seconds)
    self.transport = transport

  async def _request(
      self,
      method: str,
      path: str,
      params: Optional[Dict[str, Any]] = None,
      idempotency_key: Optional[str] = None,
  ) -> Dict[str, Any]:
    if not self.secret_key:
      raise PaymentProcessorError(
          "Payment processor is not configured", code="PROCESSOR_NOT_CONFIGURED"
      )

    headers = {"Authorization": f"Bearer {self.secret_key}"}
    if idempotency_key:
      headers["Idempotency-Key"] = idempotency_key

    form = encode_form(params or {})
    try:
      async with httpx.AsyncClient(
          base_url=self.api_base,
          timeout=self.timeout,
          transport=self.transport,
      ) as client:
        if method == "GET":
          response = await client.get(path, params=form, headers=headers)
        else:
          headers["Content-Type"] = "application/x-www-form-urlencoded"
          response = await client.post(
              path, content=urllib.parse.urlencode(form), headers=headers
          )
        response.raise_for_status()
        return response.json()
    except httpx.TimeoutException as e:
      logger.error("Payment processor timed out on %s %s", method, path)
      raise PaymentProcessorError(
          f"Payment processor timed out: {e}", code="PROCESSOR_TIMEOUT"
      ) from e
    except httpx.HTTPStatusError as e:
      message = _error_message(e.response)
      logger.error(
          "Payment processor rejected %s %s (HTTP %d): %s",
          method,
          path,
          e.response.status_code,
          message,
      )
      raise PaymentProcessorError(message, code="PROCESSOR_REJECTED") from e
    except httpx.RequestError as e:
      logger.error("Payment processor unreachable on %s %s: %s", method, path, e)
      raise PaymentProcessorError(
          f"Payment processor unreachable: {e}", code="PROCESSOR_UNAVAILABLE"
      ) from e
    except ValueError as e:
      raise PaymentProcessorError(
          f"Payment processor returned invalid JSON: {e}"
      ) from e

  async def create_tax_calculation(
      self,
      amount_cents: int,
      currency: str,
      address: Dict[str, Any],
      tax_code: str,
      reference: str = "book_preorder",
  ) -> Dict[str, Any]:
    """Creates a tax calculation for one line item shipped to an address."""
    return await self._request(
        "POST",
        "/v1/tax/calculations",
        {
            "currency": currency,
            "line_items": [{
                "amount": amount_cents,
                "reference": reference,
                "tax_code": tax_code,
            }],
            "customer_details": {
                "address": address,
                "address_source": "shipping",
            },
        },
    )

  async def retrieve_tax_calculation(self, calculation_id: str) -> Dict[str, Any]:
    return await self._request("GET", f"/v1/tax/calculations/{calculation_id}")

  async def create_payment_intent(
      self,
      amount_cents: int,
      currency: str,
      metadata: Dict[str, Any],
      receipt_email: Optional[str] = None,
      tax_calculation_id: Optional[str] = None,
      idempotency_key: Optional[str] = None,
  ) -> Dict[str, Any]:
    """Creates a payment intent, linking a tax calculation when one exists."""
    params: Dict[str, Any] = {
        "amount": amount_cents,
        "currency": currency,
        "automatic_payment_methods": {
            "enabled": True,
            "allow_redirects": "always",
        },
        "receipt_email": receipt_email,
        "metadata": metadata,
    }
    if tax_calculation_id:
      params["hooks"] = {
          "inputs": {"tax": {"calculation": tax_calculation_id}}
      }
    return await self._request(
        "POST", "/v1/payment_intents", params, idempotency_key=idempotency_key
    )

  async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
    return await self._request(
        "GET", f"/v1/payment_intents/{payment_intent_id}"
    )

  async def create_checkout_session(
      self,
      params: Dict[str, Any],
      idempotency_key: Optional[str] = None,
  ) -> Dict[str, Any]:
    return await self._request(
        "POST", "/v1/checkout/sessions", params, idempotency_key=idempotency_key
    )

  async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
    return await self._request(
        "GET",
        f"/v1/checkout/sessions/{session_id}",
        {"expand": ["total_details.breakdown"]},
    )


def _error_message(response: httpx.Response) -> str:
  try:
    body = response.json()
  except ValueError:
    return response.text or f"HTTP {response.status_code}"
  error = body.get("error") if isinstance(body, dict) else None
  if isinstance(error, dict) and error.get("message"):
    return error["message"]
  return f"HTTP {response.status_code}"
