"""Payment provider capability: create intent, look it up, verify webhooks.

`StripePaymentProvider` talks to Stripe; `SimulatedPaymentProvider` keeps
intents in memory for local runs and integration tests. Lookups return an
explicit `IntentLookup` instead of raising, so callers branch on the result.
"""

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

import stripe

from orderflow.common.errors import PaymentProviderError, WebhookPayloadError, WebhookVerificationError
from orderflow.common.logging import logger


class LookupKind:
    FOUND = "FOUND"
    NOT_FOUND = "NOT_FOUND"
    STALE = "STALE"


# Provider intent statuses that can still be confirmed by the shopper.
REUSABLE_INTENT_STATUSES = frozenset(
    {"requires_payment_method", "requires_confirmation", "requires_action", "processing"}
)


@dataclass
class CreatedIntent:
    id: str
    client_secret: str
    status: str = "requires_payment_method"
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class IntentLookup:
    kind: str
    intent_id: str
    client_secret: str | None = None
    status: str | None = None
    amount_cents: int | None = None
    reason: str | None = None

    @property
    def found(self) -> bool:
        return self.kind == LookupKind.FOUND


class PaymentProvider(Protocol):
    name: str

    def create_intent(
        self, amount_cents: int, currency: str, metadata: dict[str, str], idempotency_key: str | None = None
    ) -> CreatedIntent: ...

    def retrieve_intent(self, intent_id: str) -> IntentLookup: ...

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]: ...


class StripePaymentProvider:
    """Stripe PaymentIntents with per-call API keys; no module-global key is set."""

    name = "stripe"

    def __init__(self, secret_key: str, webhook_secret: str) -> None:
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def create_intent(self, amount_cents, currency, metadata, idempotency_key=None) -> CreatedIntent:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self.secret_key,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as exc:
            logger.error("stripe intent creation failed error=%s", exc)
            raise PaymentProviderError("payment provider rejected intent creation", provider=self.name) from exc
        return CreatedIntent(
            id=intent["id"],
            client_secret=intent["client_secret"],
            status=intent["status"],
            raw={"id": intent["id"], "status": intent["status"], "amount": intent["amount"]},
        )

    def retrieve_intent(self, intent_id: str) -> IntentLookup:
        if not intent_id.startswith("pi_") or "_sim_" in intent_id:
            return IntentLookup(LookupKind.STALE, intent_id, reason="not_a_provider_reference")
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.InvalidRequestError as exc:
            if getattr(exc, "code", None) == "resource_missing":
                return IntentLookup(LookupKind.NOT_FOUND, intent_id, reason="resource_missing")
            raise PaymentProviderError("payment provider lookup failed", provider=self.name) from exc
        except stripe.StripeError as exc:
            raise PaymentProviderError("payment provider lookup failed", provider=self.name) from exc
        if intent["status"] not in REUSABLE_INTENT_STATUSES:
            return IntentLookup(
                LookupKind.STALE, intent_id, status=intent["status"], amount_cents=intent["amount"], reason="status"
            )
        return IntentLookup(
            LookupKind.FOUND,
            intent_id,
            client_secret=intent["client_secret"],
            status=intent["status"],
            amount_cents=intent["amount"],
        )

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not signature:
            raise WebhookVerificationError("missing webhook signature")
        if not self.webhook_secret:
            raise WebhookVerificationError("webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("webhook signature verification failed") from exc
        except ValueError as exc:
            raise WebhookPayloadError("webhook body is not valid JSON") from exc
        # Verified; hand back plain JSON rather than StripeObject wrappers.
        return json.loads(payload)


class SimulatedPaymentProvider:
    """In-memory provider. Signatures are hex HMAC-SHA256 of the body under the webhook secret."""

    name = "simulated"

    def __init__(self, webhook_secret: str = "") -> None:
        self.webhook_secret = webhook_secret
        self.intents: dict[str, dict[str, Any]] = {}

    def create_intent(self, amount_cents, currency, metadata, idempotency_key=None) -> CreatedIntent:
        intent_id = f"pi_sim_{uuid4().hex}"
        client_secret = f"{intent_id}_secret_{uuid4().hex[:12]}"
        self.intents[intent_id] = {
            "id": intent_id,
            "client_secret": client_secret,
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": dict(metadata),
            "status": "requires_payment_method",
        }
        return CreatedIntent(id=intent_id, client_secret=client_secret, raw={"id": intent_id, "simulated": True})

    def retrieve_intent(self, intent_id: str) -> IntentLookup:
        intent = self.intents.get(intent_id)
        if intent is None:
            kind = LookupKind.NOT_FOUND if intent_id.startswith("pi_sim_") else LookupKind.STALE
            return IntentLookup(kind, intent_id, reason="unknown_reference")
        if intent["status"] not in REUSABLE_INTENT_STATUSES:
            return IntentLookup(
                LookupKind.STALE, intent_id, status=intent["status"], amount_cents=intent["amount"], reason="status"
            )
        return IntentLookup(
            LookupKind.FOUND,
            intent_id,
            client_secret=intent["client_secret"],
            status=intent["status"],
            amount_cents=intent["amount"],
        )

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def verify_webhook(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self.webhook_secret:
            raise WebhookVerificationError("webhook secret is not configured")
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise WebhookVerificationError("webhook signature verification failed")
        try:
            return json.loads(payload)
        except ValueError as exc:
            raise WebhookPayloadError("webhook body is not valid JSON") from exc


def build_provider(settings) -> PaymentProvider:
    if settings.payment_provider == "stripe":
        if not settings.stripe_secret_key:
            raise RuntimeError("PAYMENT_PROVIDER=stripe requires STRIPE_SECRET_KEY")
        return StripePaymentProvider(settings.stripe_secret_key, settings.stripe_webhook_secret)
    return SimulatedPaymentProvider(settings.stripe_webhook_secret)
