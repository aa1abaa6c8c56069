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

"""Database management and persistence layer for the preorder server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
  factory setup.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging so the storefront
  and webhook requests can read while another request writes.
- Declarative Models: Defines tables for orders, checkout flows and site
  configuration.
- Data Access Helpers: A suite of asynchronous functions for CRUD operations on
  the database models.

Money columns hold integer cents.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Tuple

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import Float
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> str:
  return datetime.datetime.now(datetime.timezone.utc).isoformat()


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, path: str) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{path}"
    self.engine = create_async_engine(url, echo=False)

    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  email = Column(String, index=True)
  name = Column(String)
  book_format = Column(String)
  book_title = Column(String, nullable=True)
  quantity = Column(Integer, default=1)

  subtotal = Column(Integer, default=0)  # In cents
  tax_amount = Column(Integer, default=0)  # In cents
  tax_rate = Column(Float, default=0.0)
  shipping_amount = Column(Integer, default=0)  # In cents
  total_amount = Column(Integer, default=0)  # In cents

  status = Column(String, index=True)
  shipping_status = Column(String, index=True)
  tracking_number = Column(String, nullable=True)

  checkout_session_id = Column(String, nullable=True, index=True)
  payment_intent_id = Column(String, nullable=True, index=True)
  tax_calculation_id = Column(String, nullable=True)

  shipping_first_name = Column(String, nullable=True)
  shipping_last_name = Column(String, nullable=True)
  shipping_address_line1 = Column(String, nullable=True)
  shipping_address_line2 = Column(String, nullable=True)
  shipping_city = Column(String, nullable=True)
  shipping_state = Column(String, nullable=True)
  shipping_postal_code = Column(String, nullable=True)
  shipping_country = Column(String, nullable=True)
  shipping_phone = Column(String, nullable=True)

  created_at = Column(String)
  payment_completed_at = Column(String, nullable=True)
  payment_failed_at = Column(String, nullable=True)
  shipped_at = Column(String, nullable=True)
  delivered_at = Column(String, nullable=True)
  updated_at = Column(String, nullable=True)

  # Incremented on every write; used for conditional updates.
  version = Column(Integer, default=1, nullable=False)


class CheckoutFlowRecord(Base):
  __tablename__ = "checkout_flows"

  id = Column(String, primary_key=True)
  step = Column(String)
  # SQLAlchemy JSON type handles serialization automatically
  data = Column(JSON)


class SiteConfigEntry(Base):
  __tablename__ = "site_config"

  config_key = Column(String, primary_key=True)
  config_value = Column(JSON)
  category = Column(String, nullable=True)
  description = Column(String, nullable=True)
  is_active = Column(Boolean, default=True)
  updated_at = Column(String, nullable=True)


# --- Data Access Helpers ---


async def insert_order(session: AsyncSession, values: Dict[str, Any]) -> Order:
  """Adds a new order row built from column values."""
  order = Order(**values)
  session.add(order)
  await session.flush()
  return order


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def get_order_by_checkout_session(
    session: AsyncSession, checkout_session_id: str
) -> Optional[Order]:
  """Retrieves the most recent order for a processor checkout session."""
  result = await session.execute(
      select(Order)
      .where(Order.checkout_session_id == checkout_session_id)
      .order_by(Order.created_at.desc())
      .limit(1)
  )
  return result.scalar_one_or_none()


async def get_order_by_payment_intent(
    session: AsyncSession, payment_intent_id: str
) -> Optional[Order]:
  """Retrieves the most recent order for a processor payment intent."""
  result = await session.execute(
      select(Order)
      .where(Order.payment_intent_id == payment_intent_id)
      .order_by(Order.created_at.desc())
      .limit(1)
  )
  return result.scalar_one_or_none()


async def update_order(
    session: AsyncSession,
    order_id: str,
    values: Dict[str, Any],
    expected_version: Optional[int] = None,
) -> bool:
  """Applies column values to an order and bumps its version.

  Args:
    session: The database session to use.
    order_id: The order to update.
    values: Column name to new value.
    expected_version: When given, the write only happens if the stored version
      still matches.

  Returns:
    True if a row was written.
  """
  stmt = (
      update(Order)
      .where(Order.id == order_id)
      .values(version=Order.version + 1, **values)
      .execution_options(synchronize_session=False)
  )
  if expected_version is not None:
    stmt = stmt.where(Order.version == expected_version)
  result = await session.execute(stmt)
  return result.rowcount > 0


async def list_orders(
    session: AsyncSession,
    status: Optional[str] = None,
    shipping_status: Optional[str] = None,
    search: Optional[str] = None,
    offset: int = 0,
    limit: int = 50,
) -> Tuple[List[Order], int]:
  """Lists orders newest first with optional filters.

  Args:
    session: The database session to use.
    status: Only orders with this payment status.
    shipping_status: Only orders with this shipping status.
    search: Case-insensitive substring of email, name, payment intent id or
      tracking number.
    offset: Number of rows to skip.
    limit: Maximum rows to return.

  Returns:
    The page of orders and the total number of matching orders.
  """
  conditions = []
  if status:
    conditions.append(Order.status == status)
  if shipping_status:
    conditions.append(Order.shipping_status == shipping_status)
  if search:
    pattern = f"%{search}%"
    conditions.append(
        or_(
            Order.email.ilike(pattern),
            Order.name.ilike(pattern),
            Order.payment_intent_id.ilike(pattern),
            Order.tracking_number.ilike(pattern),
        )
    )

  count_result = await session.execute(
      select(func.count()).select_from(Order).where(*conditions)
  )
  total = count_result.scalar_one()

  result = await session.execute(
      select(Order)
      .where(*conditions)
      .order_by(Order.created_at.desc())
      .offset(offset)
      .limit(limit)
  )
  return list(result.scalars().all()), total


async def save_checkout_flow(
    session: AsyncSession,
    flow_id: str,
    step: str,
    flow_obj: Dict[str, Any],
) -> None:
  """Saves or updates a checkout flow."""
  existing = await session.get(CheckoutFlowRecord, flow_id)
  if existing:
    existing.step = step
    existing.data = flow_obj
  else:
    session.add(CheckoutFlowRecord(id=flow_id, step=step, data=flow_obj))


async def get_checkout_flow(
    session: AsyncSession, flow_id: str
) -> Optional[Dict[str, Any]]:
  """Retrieves a checkout flow by ID."""
  result = await session.get(CheckoutFlowRecord, flow_id)
  if result:
    return result.data
  return None


async def get_site_config_entry(
    session: AsyncSession, key: str
) -> Optional[SiteConfigEntry]:
  """Retrieves an active site configuration entry."""
  result = await session.execute(
      select(SiteConfigEntry).where(
          SiteConfigEntry.config_key == key,
          SiteConfigEntry.is_active.is_(True),
      )
  )
  return result.scalar_one_or_none()


async def save_site_config_entry(
    session: AsyncSession,
    key: str,
    value: Any,
    description: Optional[str] = None,
    category: Optional[str] = None,
) -> SiteConfigEntry:
  """Saves or updates a site configuration entry."""
  existing = await session.get(SiteConfigEntry, key)
  if existing:
    existing.config_value = value
    existing.is_active = True
    existing.updated_at = utcnow()
    if description is not None:
      existing.description = description
    if category is not None:
      existing.category = category
    return existing

  entry = SiteConfigEntry(
      config_key=key,
      config_value=value,
      description=description,
      category=category,
      is_active=True,
      updated_at=utcnow(),
  )
  session.add(entry)
  return entry
