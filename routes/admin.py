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

"""Admin routes for orders and site configuration."""

import math
from typing import Optional

import dependencies
from enums import OrderStatus
from enums import ShippingStatus
from exceptions import InvalidRequestError
from exceptions import ResourceNotFoundError
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Query
from models import Order
from models import OrderAdminUpdate
from models import OrderPage
from models import OrderPatch
from models import Pagination
from models import SiteConfigUpdate
from models import SiteConfigValue
from services.order_store import OrderStore
from services.site_config import SiteConfigService

router = APIRouter(
    prefix="/admin", dependencies=[Depends(dependencies.verify_admin_token)]
)


@router.get("/orders", response_model=OrderPage, operation_id="list_orders")
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    shipping_status: Optional[ShippingStatus] = Query(
        None, alias="shippingStatus"
    ),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    order_store: OrderStore = Depends(dependencies.get_order_store),
) -> OrderPage:
  """List orders newest first, optionally filtered."""
  orders, total = await order_store.list_orders(
      status=status.value if status else None,
      shipping_status=shipping_status.value if shipping_status else None,
      search=search,
      page=page,
      limit=limit,
  )
  return OrderPage(
      data=orders,
      pagination=Pagination(
          page=page, limit=limit, total=total, pages=math.ceil(total / limit)
      ),
  )


@router.put(
    "/orders/{id}", response_model=Order, operation_id="admin_update_order"
)
async def update_order(
    order_id: str = Path(..., alias="id"),
    update: OrderAdminUpdate = Body(...),
    order_store: OrderStore = Depends(dependencies.get_order_store),
) -> Order:
  """Update status, shipping status or tracking number of an order."""
  changes = update.model_dump(exclude_unset=True)
  if not changes:
    raise InvalidRequestError("No fields to update")
  return await order_store.update(order_id, OrderPatch(**changes))


@router.get(
    "/site-config/{key}",
    response_model=SiteConfigValue,
    operation_id="get_site_config",
)
async def get_site_config(
    key: str = Path(...),
    site_config: SiteConfigService = Depends(
        dependencies.get_site_config_service
    ),
) -> SiteConfigValue:
  value = await site_config.get_value(key)
  if value is None:
    raise ResourceNotFoundError(f"Site config '{key}' not found")
  return SiteConfigValue(key=key, value=value)


@router.put(
    "/site-config/{key}",
    response_model=SiteConfigValue,
    operation_id="put_site_config",
)
async def put_site_config(
    key: str = Path(...),
    entry: SiteConfigUpdate = Body(...),
    site_config: SiteConfigService = Depends(
        dependencies.get_site_config_service
    ),
) -> SiteConfigValue:
  """Store a site config value; cached readers see it immediately."""
  await site_config.set_value(
      key, entry.value, description=entry.description, category=entry.category
  )
  return SiteConfigValue(
      key=key,
      value=entry.value,
      description=entry.description,
      category=entry.category,
  )
