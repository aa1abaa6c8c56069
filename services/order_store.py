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

"""Order record store.

Wraps the `orders` table with the operations the checkout and webhook flows
need, converting between stored cents and `Decimal` dollars. Lookup misses
return None; deciding what a miss means is the caller's job.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
import uuid

import db
from enums import MatchedBy
from enums import OrderStatus
from enums import ShippingStatus
from exceptions import PersistenceError
from exceptions import ResourceNotFoundError
from exceptions import StaleOrderError
from models import Order
from models import OrderDraft
from models import OrderPatch
from models import ShippingAddress
from money import from_cents
from money import to_cents
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_MONEY_FIELDS = ("subtotal", "tax_amount", "shipping_amount", "total_amount")

# Shipping address model field -> orders column.
_SHIPPING_COLUMNS = {
    "first_name": "shipping_first_name",
    "last_name": "shipping_last_name",
    "address_line1": "shipping_address_line1",
    "address_line2": "shipping_address_line2",
    "city": "shipping_city",
    "state": "shipping_state",
    "postal_code": "shipping_postal_code",
    "country": "shipping_country",
    "phone": "shipping_phone",
}

# Status value -> timestamp column stamped when a patch sets it.
_STATUS_TIMESTAMPS = {
    OrderStatus.COMPLETED: "payment_completed_at",
    OrderStatus.FAILED: "payment_failed_at",
}
_SHIPPING_TIMESTAMPS = {
    ShippingStatus.SHIPPED: "shipped_at",
    ShippingStatus.DELIVERED: "delivered_at",
}


def to_model(row: db.Order) -> Order:
  """Converts a stored row into the API order model."""
  return Order(
      id=row.id,
      email=row.email,
      name=row.name,
      book_format=row.book_format,
      book_title=row.book_title,
      quantity=row.quantity,
      subtotal=from_cents(row.subtotal or 0),
      tax_amount=from_cents(row.tax_amount or 0),
      tax_rate=str(row.tax_rate or 0),
      shipping_amount=from_cents(row.shipping_amount or 0),
      total_amount=from_cents(row.total_amount or 0),
      status=row.status,
      shipping_status=row.shipping_status,
      tracking_number=row.tracking_number,
      shipping=ShippingAddress(
          **{
              field: getattr(row, column)
              for field, column in _SHIPPING_COLUMNS.items()
              if getattr(row, column) is not None
          }
      ),
      checkout_session_id=row.checkout_session_id,
      payment_intent_id=row.payment_intent_id,
      tax_calculation_id=row.tax_calculation_id,
      created_at=row.created_at,
      payment_completed_at=row.payment_completed_at,
      payment_failed_at=row.payment_failed_at,
      shipped_at=row.shipped_at,
      delivered_at=row.delivered_at,
      updated_at=row.updated_at,
      version=row.version,
  )


class OrderStore:
  """CRUD over persisted orders."""

  def __init__(self, session: AsyncSession):
    self.session = session

  async def create(self, draft: OrderDraft) -> Order:
    """Writes a new pending order.

    Raises:
      PersistenceError: If the write fails; nothing is left half-written.
    """
    values = {
        "id": draft.id or str(uuid.uuid4()),
        "email": draft.email,
        "name": draft.name,
        "book_format": draft.book_format,
        "book_title": draft.book_title,
        "quantity": draft.quantity,
        "tax_rate": float(draft.tax_rate),
        "status": OrderStatus.PENDING.value,
        "shipping_status": ShippingStatus.NOT_SHIPPED.value,
        "checkout_session_id": draft.checkout_session_id,
        "payment_intent_id": draft.payment_intent_id,
        "tax_calculation_id": draft.tax_calculation_id,
        "created_at": db.utcnow(),
        "version": 1,
    }
    for field in _MONEY_FIELDS:
      values[field] = to_cents(getattr(draft, field))
    for field, column in _SHIPPING_COLUMNS.items():
      values[column] = getattr(draft.shipping, field)

    try:
      row = await db.insert_order(self.session, values)
      await self.session.commit()
    except SQLAlchemyError as e:
      await self.session.rollback()
      logger.error("Failed to create order for %s: %s", draft.email, e)
      raise PersistenceError(f"Failed to create order: {e}") from e

    logger.info("Order %s created (pending)", row.id)
    return to_model(row)

  async def find_by_id(self, order_id: str) -> Optional[Order]:
    row = await db.get_order(self.session, order_id)
    return to_model(row) if row else None

  async def find_by_checkout_session_id(
      self, checkout_session_id: str
  ) -> Optional[Order]:
    row = await db.get_order_by_checkout_session(
        self.session, checkout_session_id
    )
    return to_model(row) if row else None

  async def find_by_payment_intent_id(
      self, payment_intent_id: str
  ) -> Optional[Order]:
    row = await db.get_order_by_payment_intent(self.session, payment_intent_id)
    return to_model(row) if row else None

  def finder(
      self, matched_by: MatchedBy
  ) -> Callable[[str], Awaitable[Optional[Order]]]:
    """Returns the lookup used for a given match strategy."""
    finders: Dict[MatchedBy, Callable[[str], Awaitable[Optional[Order]]]] = {
        MatchedBy.SESSION_ID: self.find_by_checkout_session_id,
        MatchedBy.METADATA: self.find_by_id,
        MatchedBy.PAYMENT_INTENT: self.find_by_payment_intent_id,
    }
    return finders[matched_by]

  async def update(
      self,
      order_id: str,
      patch: OrderPatch,
      expected_version: Optional[int] = None,
      now: Optional[str] = None,
  ) -> Order:
    """Applies a partial update and returns the stored result.

    Only fields explicitly set on `patch` are written. Setting a payment or
    shipping status also stamps that transition's timestamp.

    Args:
      order_id: The order to update.
      patch: Fields to change.
      expected_version: When given, the update only applies if nobody has
        written the order since that version was read.
      now: Timestamp to stamp; defaults to the current time.

    Raises:
      ResourceNotFoundError: If the order does not exist.
      StaleOrderError: If `expected_version` no longer matches.
      PersistenceError: If the write fails.
    """
    now = now or db.utcnow()
    changes = patch.model_dump(exclude_unset=True)
    values = {"updated_at": now}

    for field, value in changes.items():
      if field in _MONEY_FIELDS:
        values[field] = to_cents(value) if value is not None else None
      elif field == "tax_rate":
        values[field] = float(value) if value is not None else None
      elif field in ("status", "shipping_status"):
        values[field] = value.value if value is not None else None
      else:
        values[field] = value

    status = changes.get("status")
    if status in _STATUS_TIMESTAMPS:
      values[_STATUS_TIMESTAMPS[status]] = now
    shipping_status = changes.get("shipping_status")
    if shipping_status in _SHIPPING_TIMESTAMPS:
      values[_SHIPPING_TIMESTAMPS[shipping_status]] = now

    try:
      written = await db.update_order(
          self.session, order_id, values, expected_version=expected_version
      )
      if not written:
        await self.session.rollback()
        if expected_version is not None and await db.get_order(
            self.session, order_id
        ):
          raise StaleOrderError(
              f"Order {order_id} changed since version {expected_version}"
          )
        raise ResourceNotFoundError("Order not found")
      await self.session.commit()
    except SQLAlchemyError as e:
      await self.session.rollback()
      logger.error("Failed to update order %s: %s", order_id, e)
      raise PersistenceError(f"Failed to update order: {e}") from e

    row = await self.session.get(db.Order, order_id, populate_existing=True)
    return to_model(row)

  async def list_orders(
      self,
      status: Optional[str] = None,
      shipping_status: Optional[str] = None,
      search: Optional[str] = None,
      page: int = 1,
      limit: int = 50,
  ) -> Tuple[List[Order], int]:
    page = max(page, 1)
    limit = max(min(limit, 200), 1)
    rows, total = await db.list_orders(
        self.session,
        status=status,
        shipping_status=shipping_status,
        search=search,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return [to_model(row) for row in rows], total
