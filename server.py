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

"""Book preorder checkout server (Python/FastAPI)."""

import logging
import sys
from typing import Sequence
from absl import app as absl_app
import config
from exceptions import BookstoreError
from exceptions import InvalidRequestError
from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from routes.admin import router as admin_router
from routes.checkout import router as checkout_router
from routes.tax import router as tax_router
from routes.webhooks import router as webhooks_router
import uvicorn

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Book Preorder Service",
    version=config.SERVER_VERSION,
    description="Checkout, tax and payment reconciliation for book preorders",
    lifespan=config.lifespan,
)


@app.exception_handler(BookstoreError)
async def bookstore_exception_handler(request: Request, exc: BookstoreError):
  """Converts service exceptions to JSON responses."""
  del request  # Unused.
  content = {"detail": exc.message, "code": exc.code}
  if isinstance(exc, InvalidRequestError) and exc.field:
    content["field"] = exc.field
  if exc.status_code >= 500:
    logger.error("%s: %s", exc.code, exc.message)
  return JSONResponse(status_code=exc.status_code, content=content)


app.include_router(tax_router)
app.include_router(checkout_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


def main(argv: Sequence[str]) -> None:
  """Main entry point for the preorder server."""
  del argv  # Unused.

  if config.FLAGS.db_path is None or config.FLAGS.port is None:
    logger.error("Both --db_path and --port must be provided.")
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  uvicorn.run(app, host="0.0.0.0", port=config.FLAGS.port)


if __name__ == "__main__":
  absl_app.run(main)
