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

"""Database initialization script for the preorder server.

Loads default site configuration (book formats, shipping price, tax settings,
book info) from a JSON file into the configured SQLite database. Existing
values for the same keys are overwritten; other keys are left alone.

Usage:
  uv run seed_config.py --db_path=... [--config_file=...]
"""

import asyncio
import json
import logging
import os
from absl import app as absl_app
from absl import flags
import config
import db
from services.site_config import SiteConfigService

FLAGS = flags.FLAGS
flags.DEFINE_string(
    "config_file",
    os.path.join(
        os.path.dirname(os.path.abspath(__file__)), "data", "site_config.json"
    ),
    "JSON list of {key, value, category, description} entries",
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def seed_site_config(db_path: str, config_file: str) -> int:
  """Writes every entry of the config file; returns how many were written."""
  with open(config_file, "r") as f:
    entries = json.load(f)

  await db.manager.init_db(db_path)
  try:
    async with db.manager.session_factory() as session:
      service = SiteConfigService(session)
      for entry in entries:
        logger.info("Writing site config %s", entry["key"])
        await service.set_value(
            entry["key"],
            entry["value"],
            description=entry.get("description"),
            category=entry.get("category"),
        )
  finally:
    await db.manager.close()
  return len(entries)


def main(argv) -> None:
  del argv  # Unused.
  if not config.FLAGS.db_path:
    raise absl_app.UsageError("--db_path must be provided.")
  count = asyncio.run(seed_site_config(config.FLAGS.db_path, FLAGS.config_file))
  logger.info("Seeded %d site config entries.", count)


if __name__ == "__main__":
  absl_app.run(main)
