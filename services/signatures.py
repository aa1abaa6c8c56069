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

"""Verification of signed webhook deliveries.

The signature header has the form `t=<unix seconds>,v1=<hex>[,v1=<hex>...]`.
Each `v1` value is an HMAC-SHA256 of `"{t}.{raw body}"` keyed with the webhook
signing secret; any one matching value is accepted.
"""

import hashlib
import hmac
import time
from typing import Optional

from exceptions import InvalidSignatureError

DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
  signed = f"{timestamp}.".encode("utf-8") + payload
  return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(
    payload: bytes, secret: str, timestamp: Optional[int] = None
) -> str:
  """Builds a signature header for a payload."""
  timestamp = int(time.time()) if timestamp is None else timestamp
  return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
  """Checks a webhook signature header against the raw request body.

  Args:
    payload: The raw request body, exactly as received.
    header: The signature header value.
    secret: The webhook signing secret.
    tolerance_seconds: Maximum allowed age of the signed timestamp.
    now: Current unix time; defaults to the system clock.

  Raises:
    InvalidSignatureError: If the header is missing, malformed, stale, or no
      signature matches.
  """
  if not secret:
    raise InvalidSignatureError("Webhook signing secret is not configured")
  if not header:
    raise InvalidSignatureError("Missing signature header")

  timestamp = None
  signatures = []
  for part in header.split(","):
    key, _, value = part.strip().partition("=")
    if key == "t":
      try:
        timestamp = int(value)
      except ValueError:
        raise InvalidSignatureError("Malformed signature timestamp") from None
    elif key == "v1" and value:
      signatures.append(value)

  if timestamp is None or not signatures:
    raise InvalidSignatureError("Malformed signature header")

  now = time.time() if now is None else now
  if tolerance_seconds and abs(now - timestamp) > tolerance_seconds:
    raise InvalidSignatureError("Signature timestamp outside tolerance")

  expected = compute_signature(payload, timestamp, secret)
  if not any(hmac.compare_digest(expected, sig) for sig in signatures):
    raise InvalidSignatureError("No signature matches the payload")
