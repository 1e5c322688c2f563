"""API request/response schemas for payment endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PaymentIntentRequest(BaseModel):
    """Body of `POST /payments/intent` and `POST /payments/retry`."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1)


class PaymentIntentResponse(BaseModel):
    """Serialized with `by_alias=True`; the storefront reads camelCase keys."""

    client_secret: str = Field(serialization_alias="clientSecret")
    payment_intent_id: str = Field(serialization_alias="paymentIntentId")
    outcome: str


class PaymentRetryResponse(PaymentIntentResponse):
    attempt: int
    retries_remaining: int = Field(serialization_alias="retriesRemaining")
    backoff_seconds: int = Field(serialization_alias="backoffSeconds")
    next_retry_at: datetime | None = Field(default=None, serialization_alias="nextRetryAt")
