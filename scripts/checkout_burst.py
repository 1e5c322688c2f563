"""Fire concurrent checkouts at one size variant and report oversell.

With `--stock N` already seeded on the variant, exactly N checkouts should
succeed and the rest should fail with OUT_OF_STOCK.
"""

import argparse
import asyncio
from collections import Counter
from uuid import uuid4

import httpx


def checkout_body(product_id: str, size: str, price_cents: int) -> dict:
    return {
        "lines": [{"product_id": product_id, "size": size, "qty": 1, "price_cents_snapshot": price_cents}],
        "shipping_address": {
            "full_name": "Load Test",
            "line1": "1 Market St",
            "city": "San Francisco",
            "region": "CA",
            "postal_code": "94105",
            "country": "US",
        },
        "email": "load@example.com",
        "idempotency_key": f"burst-{uuid4().hex}",
    }


async def run(args) -> None:
    sem = asyncio.Semaphore(args.concurrency)
    outcomes: Counter[str] = Counter()

    async with httpx.AsyncClient(timeout=15.0) as client:

        async def one(i: int) -> None:
            async with sem:
                try:
                    resp = await client.post(
                        f"{args.base_url}/checkout",
                        json=checkout_body(args.product_id, args.size, args.price_cents),
                        headers={"x-api-key": args.api_key, "x-session-id": f"burst-{i}"},
                    )
                except httpx.HTTPError:
                    outcomes["transport_error"] += 1
                    return
                if resp.status_code == 200:
                    outcomes["created"] += 1
                else:
                    outcomes[resp.json().get("error", str(resp.status_code))] += 1

        await asyncio.gather(*(one(i) for i in range(args.total)))

    for key, value in sorted(outcomes.items()):
        print(f"{key}={value}")
    if args.stock is not None:
        oversold = max(0, outcomes["created"] - args.stock)
        print(f"oversold={oversold}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--api-key", default="")
    parser.add_argument("--product-id", required=True)
    parser.add_argument("--size", required=True)
    parser.add_argument("--price-cents", type=int, default=600)
    parser.add_argument("--total", type=int, default=50)
    parser.add_argument("--concurrency", type=int, default=25)
    parser.add_argument("--stock", type=int, default=None, help="Seeded stock, to compute oversell")
    asyncio.run(run(parser.parse_args()))
