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

"""Inbound payment processor webhook route."""

import logging
from typing import Any, Optional

import config
import dependencies
from exceptions import InvalidRequestError
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import Request
from fastapi.responses import JSONResponse
from models import WebhookEvent
import pydantic
from services import signatures
from services.webhook_service import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhooks/payment",
    response_model=dict[str, Any],
    operation_id="payment_webhook",
)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    settings: config.Settings = Depends(dependencies.get_settings),
    reconciler: WebhookReconciler = Depends(
        dependencies.get_webhook_reconciler
    ),
) -> Any:
  """Verify and apply a signed payment event.

  Returns 200 once the event is handled (including when no order matches),
  400 on a bad signature or payload, and 500 when handling fails so the
  processor redelivers.
  """
  if not settings.processor_webhook_secret:
    logger.error("Webhook received but no signing secret is configured")
    return JSONResponse(
        status_code=500, content={"error": "Webhook secret not configured"}
    )

  payload = await request.body()
  signatures.verify_signature(
      payload,
      stripe_signature,
      settings.processor_webhook_secret,
      tolerance_seconds=settings.webhook_tolerance_seconds,
  )
  try:
    event = WebhookEvent.model_validate_json(payload)
  except pydantic.ValidationError as e:
    raise InvalidRequestError(f"Malformed event payload: {e}") from e

  try:
    result = await reconciler.handle(event)
  except Exception as e:  # pylint: disable=broad-exception-caught
    logger.exception("Webhook processing failed for event %s", event.id)
    return JSONResponse(
        status_code=500,
        content={"error": "Webhook processing failed", "detail": str(e)},
    )

  logger.info(
      "Webhook %s (%s) handled: matched by %s, order %s, emails %s",
      event.id,
      result.event_type,
      result.matched_by.value,
      result.order_id,
      "attempted" if result.emails_attempted else "skipped",
  )
  return {"received": True}
