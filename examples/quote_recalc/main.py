#!/usr/bin/env python3
"""
Quote Recalculation

Recalculates a batch of generated quotes one at a time through a pricing
client that only offers a callback API, writing each result to output/.

Demonstrates:
- A callback-based vendor client wrapped by a continuation
- Durable queue in SQLite (--db): what is left after an abort stays on disk
- Fail-fast vs continue policies

Usage:
    python main.py                       # 25 generated quotes
    python main.py --count 200 --policy continue
    python main.py --db quotes.db        # keep the queue on disk
"""

import argparse
import asyncio
import json
import logging
import random
import threading
import time
from pathlib import Path

import quotechain

OUTPUT_DIR = Path("output")


class PricingClient:
    """Vendor-style client: calculate() returns at once and calls back later."""

    def __init__(self, latency: float = 0.02):
        self.latency = latency
        self.busy = threading.Lock()

    def calculate(self, quote: dict, on_done) -> None:
        def work():
            # The vendor service refuses concurrent requests
            if not self.busy.acquire(blocking=False):
                raise RuntimeError("pricing service is busy")
            try:
                time.sleep(self.latency)
                total = 0.0
                for line in quote["lines"]:
                    total += line["qty"] * line["list_price"] * (1 - line["discount"])
                priced = {**quote, "net_total": round(total, 2), "success": True}
            finally:
                self.busy.release()
            on_done(priced)

        threading.Thread(target=work, daemon=True).start()


def make_quotes(count: int) -> dict[str, dict]:
    quotes = {}
    for i in range(count):
        quote_id = f"Q-{i:05d}"
        quotes[quote_id] = {
            "id": quote_id,
            "lines": [
                {
                    "qty": random.randint(1, 10),
                    "list_price": round(random.uniform(10, 900), 2),
                    "discount": random.choice((0.0, 0.1, 0.15)),
                }
                for _ in range(random.randint(1, 6))
            ],
        }
    return quotes


async def run(args) -> None:
    OUTPUT_DIR.mkdir(exist_ok=True)
    quotes = make_quotes(args.count)
    client = PricingClient(latency=args.latency / 1000)

    store = quotechain.SqliteQueueStore(args.db) if args.db else quotechain.MemoryQueueStore()
    chain = quotechain.Chain("quote-recalc", store=store, failure_policy=args.policy, callback_timeout=5)

    # --- Collaborators ---
    @chain.reader
    def read_quote(quote_id):
        return quotes[quote_id]

    @chain.calculator
    def calculate(quote, continuation):
        client.calculate(quote, on_done=continuation.complete)

    @chain.saver
    def save_quote(result):
        path = OUTPUT_DIR / f"{result['id']}.json"
        path.write_text(json.dumps(result, indent=2))

    # --- Progress ---
    @chain.on_save
    def on_save(item, result):
        print(f"  ✓ {item.id}  {result['net_total']:>12,.2f}")

    @chain.on_failure
    def on_failure(item_id, error):
        print(f"  ✗ {item_id}  {error}")

    print(f"Recalculating {len(quotes)} quotes (policy: {args.policy})")
    started = time.time()
    await chain.submit(list(quotes))
    try:
        report = await chain.join()
    except quotechain.ChainError as e:
        print(f"\nAborted: {e}")
        print(f"Left in queue: {len(await chain.remaining())}")
    else:
        print(f"\nSaved {len(report.saved)}, failed {len(report.failed)} in {time.time() - started:.2f}s")
    finally:
        await chain.close()


def main():
    parser = argparse.ArgumentParser(description="Recalculate quotes one at a time")
    parser.add_argument("--count", type=int, default=25, help="Number of quotes (default: 25)")
    parser.add_argument("--latency", type=int, default=20, help="Pricing latency in ms (default: 20)")
    parser.add_argument("--policy", choices=["abort", "continue"], default="abort")
    parser.add_argument("--db", default=None, help="SQLite file for the queue (default: in memory)")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    if args.seed is not None:
        random.seed(args.seed)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")

    asyncio.run(run(args))


if __name__ == "__main__":
    main()
