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

"""Tax calculation route."""

import dependencies
from exceptions import InvalidRequestError
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from models import ShippingAddress
from models import TaxCalculation
from models import TaxCalculationRequest
from services.site_config import SiteConfigService
from services.tax_service import TaxService

router = APIRouter()


@router.post(
    "/tax/calculate",
    response_model=TaxCalculation,
    operation_id="calculate_tax",
)
async def calculate_tax(
    request: TaxCalculationRequest = Body(...),
    tax_service: TaxService = Depends(dependencies.get_tax_service),
    site_config: SiteConfigService = Depends(
        dependencies.get_site_config_service
    ),
) -> TaxCalculation:
  """Calculate tax for a subtotal shipped to an address."""
  if request.subtotal is None or request.subtotal <= 0:
    raise InvalidRequestError("Subtotal is required", field="subtotal")
  postal_code = (request.shipping_postal_code or "").strip()
  if not postal_code:
    raise InvalidRequestError(
        "ZIP code is required", field="shippingPostalCode"
    )
  tax_settings = await site_config.get_tax_settings()
  return await tax_service.calculate(
      request.subtotal,
      ShippingAddress(
          country=request.shipping_country,
          state=request.shipping_state,
          city=request.shipping_city,
          postal_code=request.shipping_postal_code,
      ),
      is_digital=request.is_digital,
      digital_exempt=tax_settings.digital_products_exempt,
  )
