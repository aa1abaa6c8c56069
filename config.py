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

"""Shared configuration and startup logic for the preorder server.

Every setting is an absl flag whose default comes from the environment, so the
server can be configured either on the command line or purely through env
vars. Flag values are read through `FLAGS[name].value`, which does not require
absl to have parsed argv; ASGI servers and test runners never call
`absl.app.run`.
"""

import contextlib
import os
from typing import Optional

from absl import flags
import db
from fastapi import FastAPI
from pydantic import BaseModel
from pydantic import ConfigDict
from services import site_config

FLAGS = flags.FLAGS

SERVER_VERSION = "2025-10-01"


def _env_float(name: str, default: float) -> float:
  value = os.environ.get(name)
  return float(value) if value else default


# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string(
      "db_path", os.environ.get("PREORDER_DB_PATH"), "Path to the orders DB"
  )
  flags.DEFINE_integer(
      "port", int(os.environ.get("PORT", "0")) or None, "Port to run on"
  )
  flags.DEFINE_string(
      "processor_secret_key",
      os.environ.get("STRIPE_SECRET_KEY"),
      "Secret API key for the payment processor",
  )
  flags.DEFINE_string(
      "processor_api_base",
      os.environ.get("STRIPE_API_BASE", "https://api.stripe.com"),
      "Base URL of the payment processor REST API",
  )
  flags.DEFINE_string(
      "processor_webhook_secret",
      os.environ.get("STRIPE_WEBHOOK_SECRET"),
      "Signing secret for inbound payment webhooks",
  )
  flags.DEFINE_integer(
      "webhook_tolerance_seconds",
      300,
      "Maximum age of a signed webhook timestamp",
  )
  flags.DEFINE_float(
      "processor_timeout_seconds",
      _env_float("STRIPE_TIMEOUT_SECONDS", 10.0),
      "Timeout for calls to the payment processor",
  )
  flags.DEFINE_string(
      "email_api_key",
      os.environ.get("RESEND_API_KEY"),
      "API key for the transactional email service",
  )
  flags.DEFINE_string(
      "email_api_base",
      os.environ.get("RESEND_API_BASE", "https://api.resend.com"),
      "Base URL of the transactional email API",
  )
  flags.DEFINE_string(
      "email_from_address",
      os.environ.get("RESEND_FROM_EMAIL", "noreply@yourdomain.com"),
      "Sender address for transactional email",
  )
  flags.DEFINE_string(
      "email_from_name",
      os.environ.get("RESEND_FROM_NAME", "Waiting to Fly"),
      "Sender display name for transactional email",
  )
  flags.DEFINE_string(
      "admin_email",
      os.environ.get("ADMIN_EMAIL"),
      "Recipient of new order notifications",
  )
  flags.DEFINE_string(
      "base_url",
      os.environ.get("NEXT_PUBLIC_BASE_URL", "http://localhost:3000"),
      "Public base URL used to build redirect URLs",
  )
  flags.DEFINE_string(
      "admin_token",
      os.environ.get("ADMIN_TOKEN"),
      "Shared token required by the admin endpoints",
  )
  flags.DEFINE_float(
      "config_cache_ttl_seconds",
      _env_float("CONFIG_CACHE_TTL_SECONDS", 300.0),
      "Lifetime of cached site configuration values",
  )
  flags.DEFINE_string("currency", "usd", "Currency for all charges")
except flags.DuplicateFlagError:
  pass


class Settings(BaseModel):
  """Immutable snapshot of the process configuration."""

  model_config = ConfigDict(frozen=True)

  db_path: Optional[str] = None
  processor_secret_key: Optional[str] = None
  processor_api_base: str = "https://api.stripe.com"
  processor_webhook_secret: Optional[str] = None
  webhook_tolerance_seconds: int = 300
  processor_timeout_seconds: float = 10.0
  email_api_key: Optional[str] = None
  email_api_base: str = "https://api.resend.com"
  email_from_address: str = "noreply@yourdomain.com"
  email_from_name: str = "Waiting to Fly"
  admin_email: Optional[str] = None
  base_url: str = "http://localhost:3000"
  admin_token: Optional[str] = None
  config_cache_ttl_seconds: float = 300.0
  currency: str = "usd"


def _flag(name: str):
  return FLAGS[name].value


def get_settings() -> Settings:
  """Builds a Settings snapshot from the current flag values."""
  return Settings(
      **{
          name: _flag(name)
          for name in Settings.model_fields
          if _flag(name) is not None
      }
  )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
  """Shared lifespan manager for the database and the config cache."""
  del app  # Unused.
  settings = get_settings()
  site_config.cache.configure(settings.config_cache_ttl_seconds)
  # In tests the DB path is usually unset and sessions are overridden.
  if settings.db_path:
    await db.manager.init_db(settings.db_path)
  yield
  site_config.cache.invalidate()
  await db.manager.close()
