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

"""Checkout routes: direct payment endpoints and the multi-step flow."""

from typing import Any

import dependencies
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from models import CheckoutFlow
from models import CheckoutSessionResponse
from models import CustomerDetails
from models import OrderDetailsRequest
from models import OrderStatusUpdateRequest
from models import PaymentConfirmation
from models import PaymentConfirmationRequest
from models import PaymentIntentResponse
from models import PurchaseRequest
from models import StepRequest
from services.checkout_service import CheckoutService

router = APIRouter()


@router.post(
    "/payment/intent",
    response_model=PaymentIntentResponse,
    operation_id="create_payment_intent",
)
async def create_payment_intent(
    request: PurchaseRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> PaymentIntentResponse:
  """Create a pending order and a payment intent for it."""
  return await checkout_service.create_payment_intent(request)


@router.post(
    "/checkout/session",
    response_model=CheckoutSessionResponse,
    operation_id="create_checkout_session",
)
async def create_checkout_session(
    request: PurchaseRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutSessionResponse:
  """Create a pending order and a hosted checkout session."""
  return await checkout_service.create_checkout_session(request)


@router.post(
    "/order/status",
    response_model=dict[str, Any],
    operation_id="update_order_status",
)
async def update_order_status(
    request: OrderStatusUpdateRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """Best-effort status update after client-side payment confirmation."""
  await checkout_service.update_order_status(
      request.payment_intent_id, request.status
  )
  return {"success": True}


@router.post(
    "/checkout/flows",
    response_model=CheckoutFlow,
    status_code=201,
    operation_id="start_checkout",
)
async def start_checkout(
    request: OrderDetailsRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutFlow:
  return await checkout_service.start_checkout(
      request.book_format, request.quantity
  )


@router.get(
    "/checkout/flows/{id}",
    response_model=CheckoutFlow,
    operation_id="get_checkout",
)
async def get_checkout(
    flow_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutFlow:
  return await checkout_service.get_flow(flow_id)


@router.put(
    "/checkout/flows/{id}/order-details",
    response_model=CheckoutFlow,
    operation_id="update_order_details",
)
async def update_order_details(
    flow_id: str = Path(..., alias="id"),
    request: OrderDetailsRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutFlow:
  return await checkout_service.update_order_details(
      flow_id, request.book_format, request.quantity
  )


@router.post(
    "/checkout/flows/{id}/continue",
    response_model=CheckoutFlow,
    operation_id="continue_to_shipping",
)
async def continue_to_shipping(
    flow_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutFlow:
  return await checkout_service.continue_to_shipping(flow_id)


@router.put(
    "/checkout/flows/{id}/shipping",
    response_model=CheckoutFlow,
    operation_id="submit_shipping",
)
async def submit_shipping(
    flow_id: str = Path(..., alias="id"),
    customer: CustomerDetails = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutFlow:
  """Submit shipping details and enter the payment step."""
  return await checkout_service.submit_shipping(flow_id, customer)


@router.post(
    "/checkout/flows/{id}/step",
    response_model=CheckoutFlow,
    operation_id="go_to_step",
)
async def go_to_step(
    flow_id: str = Path(..., alias="id"),
    request: StepRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> CheckoutFlow:
  return await checkout_service.go_to_step(flow_id, request.step)


@router.post(
    "/checkout/flows/{id}/confirm",
    response_model=PaymentConfirmation,
    operation_id="confirm_payment",
)
async def confirm_payment(
    flow_id: str = Path(..., alias="id"),
    request: PaymentConfirmationRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> PaymentConfirmation:
  """Finish a checkout after the client confirmed the payment."""
  return await checkout_service.confirm_payment(
      flow_id, request.payment_intent_status
  )
