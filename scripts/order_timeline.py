"""Print an order and its event timeline from a running checkout API."""

import argparse
import json

import httpx


def main() -> None:
    parser = argparse.ArgumentParser(description="Show order status and event log.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--meta", action="store_true", help="Include event metadata")
    args = parser.parse_args()

    with httpx.Client(timeout=10.0) as client:
        order = client.get(f"{args.base_url}/orders/{args.order_id}")
        if order.status_code != 200:
            raise SystemExit(f"order lookup failed status={order.status_code} body={order.text}")
        events = client.get(f"{args.base_url}/orders/{args.order_id}/events").json()

    o = order.json()
    print(
        f"order={o['id']} status={o['status']} total={o['total_cents']} {o['currency']} "
        f"(subtotal={o['subtotal_cents']} discount={o['discount_cents']} "
        f"tax={o['tax_cents']} shipping={o['shipping_cents']})"
    )
    for event in events:
        print(f"{event['created_at']}  {event['kind']:<24} {event.get('message') or ''}")
        if args.meta:
            print(f"    {json.dumps(event['meta'], sort_keys=True)}")


if __name__ == "__main__":
    main()
