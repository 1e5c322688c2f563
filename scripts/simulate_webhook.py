"""Post a payment webhook to a running checkout API.

Sends the flat simulated shape (requires WEBHOOK_SIMULATED_MODE=true), or a
provider-shaped event signed with the simulated provider's HMAC when
`--secret` is given. Re-run with the same `--event-id` to exercise the
duplicate-delivery gate.
"""

import argparse
import hashlib
import hmac
import json
from uuid import uuid4

import httpx


def build_payload(args) -> dict:
    if args.secret:
        event_type = {
            "success": "payment_intent.succeeded",
            "fail": "payment_intent.payment_failed",
            "processing": "payment_intent.processing",
        }[args.status]
        return {
            "id": args.event_id,
            "type": event_type,
            "data": {
                "object": {
                    "id": args.intent_id or f"pi_sim_{uuid4().hex}",
                    "metadata": {"orderId": args.order_id},
                }
            },
        }
    payload = {"eventId": args.event_id, "orderId": args.order_id, "status": args.status}
    if args.intent_id:
        payload["paymentIntentId"] = args.intent_id
    return payload


def main() -> None:
    parser = argparse.ArgumentParser(description="Send one payment webhook.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--order-id", required=True)
    parser.add_argument("--status", choices=["success", "fail", "processing"], default="success")
    parser.add_argument("--event-id", default=None, help="Reuse to replay the same delivery")
    parser.add_argument("--intent-id", default=None)
    parser.add_argument("--secret", default="", help="Webhook secret; signs a provider-shaped event")
    parser.add_argument("--repeat", type=int, default=1)
    args = parser.parse_args()
    args.event_id = args.event_id or f"evt_sim_{uuid4().hex}"

    body = json.dumps(build_payload(args)).encode("utf-8")
    headers = {"content-type": "application/json"}
    if args.secret:
        headers["x-webhook-signature"] = hmac.new(args.secret.encode(), body, hashlib.sha256).hexdigest()

    with httpx.Client(timeout=10.0) as client:
        for attempt in range(1, args.repeat + 1):
            resp = client.post(f"{args.base_url}/webhooks/payments", content=body, headers=headers)
            print(f"attempt={attempt} status={resp.status_code} body={resp.text}")


if __name__ == "__main__":
    main()
