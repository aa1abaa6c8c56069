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

"""FastAPI dependencies for the preorder server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Settings and database session management.
- Outbound clients (payment processor, email API).
- Service instantiation (checkout, tax, webhook reconciliation, site config).
- Admin token verification.
"""

from typing import AsyncGenerator, Optional

import config
import db
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from services.checkout_service import CheckoutService
from services.notification_service import NotificationDispatcher
from services.order_store import OrderStore
from services.processor_client import ProcessorClient
from services.site_config import SiteConfigService
from services.tax_service import TaxService
from services.webhook_service import WebhookReconciler
from sqlalchemy.ext.asyncio import AsyncSession


def get_settings() -> config.Settings:
  """Dependency provider for the process settings."""
  return config.get_settings()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for a database session."""
  if db.manager.session_factory is None:
    raise HTTPException(status_code=500, detail="Database not initialized")
  async with db.manager.session_factory() as session:
    yield session


def get_processor_client(
    settings: config.Settings = Depends(get_settings),
) -> ProcessorClient:
  return ProcessorClient(
      settings.processor_secret_key,
      api_base=settings.processor_api_base,
      timeout_seconds=settings.processor_timeout_seconds,
  )


def get_notification_dispatcher(
    settings: config.Settings = Depends(get_settings),
) -> NotificationDispatcher:
  return NotificationDispatcher(
      settings.email_api_key,
      from_address=settings.email_from_address,
      from_name=settings.email_from_name,
      admin_email=settings.admin_email,
      api_base=settings.email_api_base,
  )


def get_site_config_service(
    session: AsyncSession = Depends(get_db),
) -> SiteConfigService:
  return SiteConfigService(session)


def get_order_store(session: AsyncSession = Depends(get_db)) -> OrderStore:
  return OrderStore(session)


def get_tax_service(
    processor: ProcessorClient = Depends(get_processor_client),
    settings: config.Settings = Depends(get_settings),
) -> TaxService:
  return TaxService(processor, currency=settings.currency)


def get_checkout_service(
    session: AsyncSession = Depends(get_db),
    site_config: SiteConfigService = Depends(get_site_config_service),
    order_store: OrderStore = Depends(get_order_store),
    tax_service: TaxService = Depends(get_tax_service),
    processor: ProcessorClient = Depends(get_processor_client),
    settings: config.Settings = Depends(get_settings),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""
  return CheckoutService(
      session,
      site_config,
      order_store,
      tax_service,
      processor,
      base_url=settings.base_url,
      currency=settings.currency,
  )


def get_webhook_reconciler(
    order_store: OrderStore = Depends(get_order_store),
    processor: ProcessorClient = Depends(get_processor_client),
    tax_service: TaxService = Depends(get_tax_service),
    notifier: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> WebhookReconciler:
  """Dependency provider for WebhookReconciler."""
  return WebhookReconciler(order_store, processor, tax_service, notifier)


async def verify_admin_token(
    admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    settings: config.Settings = Depends(get_settings),
) -> None:
  """Verifies the shared token for admin endpoints."""
  expected_token = settings.admin_token
  if not expected_token:
    raise HTTPException(status_code=500, detail="Admin token not configured")

  if not admin_token or admin_token != expected_token:
    raise HTTPException(status_code=403, detail="Invalid admin token")
