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

"""Utility script to dump stored orders.

This script reads the configured SQLite database and prints a summary of
stored orders, newest first, including payment and shipping status and the
processor identifiers used to reconcile webhooks. It is useful for debugging
and verifying the state of the server.

Usage:
  uv run dump_orders.py --db_path=... [--status=completed] [--limit=50]
"""

import asyncio
import sys
from absl import app as absl_app
from absl import flags
import config
import db
from services.order_store import OrderStore

FLAGS = flags.FLAGS
flags.DEFINE_string("status", None, "Only show orders with this status")
flags.DEFINE_integer("limit", 50, "Maximum number of orders to show")


async def dump_orders():
  """Queries the database and prints stored orders."""
  if not config.FLAGS.db_path:
    print("Error: --db_path is required.")
    sys.exit(1)

  await db.manager.init_db(config.FLAGS.db_path)
  try:
    async with db.manager.session_factory() as session:
      orders, total = await OrderStore(session).list_orders(
          status=FLAGS.status, limit=FLAGS.limit
      )
  finally:
    await db.manager.close()

  if not orders:
    print("No orders found.")
    return

  print(f"Showing {len(orders)} of {total} orders")
  for order in orders:
    print(
        f"Order: {order.id} [{order.status.value}/"
        f"{order.shipping_status.value}] v{order.version}"
    )
    print(f"  {order.name} <{order.email}>")
    print(
        f"  {order.book_format} x{order.quantity}: subtotal"
        f" ${order.subtotal:.2f} + shipping ${order.shipping_amount:.2f} + tax"
        f" ${order.tax_amount:.2f} = ${order.total_amount:.2f}"
    )
    if order.checkout_session_id:
      print(f"  Checkout session: {order.checkout_session_id}")
    if order.payment_intent_id:
      print(f"  Payment intent: {order.payment_intent_id}")
    if order.tracking_number:
      print(f"  Tracking: {order.tracking_number}")
    print(f"  Created: {order.created_at}")
    print("-" * 60)


def main(argv):
  """Main entry point for the order dump script."""
  del argv
  asyncio.run(dump_orders())


if __name__ == "__main__":
  absl_app.run(main)
