"""Fulfillment message contract and KV data model.

Two queue payloads (TokenFulfillment, OrderFulfillment) plus the two JSON
blobs the pipeline reads and writes in the KV store:

- ``<grant_id>``             -> TokenLedgerEntry
- ``order:<payment_ref>``    -> StagedOrder (producer-written, TTL'd)
- ``fulfilled:order:<ref>``  -> completion marker for redelivered order messages
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Token bundle id -> token quantity
TOKEN_BUNDLES: dict[str, int] = {
    "tokens_10": 10,
    "tokens_25": 25,
    "tokens_50": 50,
    "bundle_10_tokens": 10,  # storefront default bundle id
}

# Most recent purchase keys remembered per ledger entry for dedup
MAX_APPLIED_PURCHASES = 100

_ORDER_KEY_PREFIX = "order:"
_ORDER_MARKER_PREFIX = "fulfilled:order:"


def staged_order_key(payment_ref: str) -> str:
    return f"{_ORDER_KEY_PREFIX}{payment_ref}"


def order_marker_key(payment_ref: str) -> str:
    return f"{_ORDER_MARKER_PREFIX}{payment_ref}"


# ---------------------------------------------------------------------------
# Queue payloads
# ---------------------------------------------------------------------------


class TokenFulfillment(BaseModel):
    """Credit a token bundle to a grant after a confirmed payment."""

    grant_id: str = Field(min_length=1)
    bundle_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    payment_customer_ref: str | None = None
    # Payment identifier; used as the dedup key when present
    payment_ref: str | None = None

    model_config = {"extra": "ignore"}


class OrderFulfillment(BaseModel):
    """Submit the staged print order for a confirmed payment."""

    payment_ref: str = Field(min_length=1)
    email: str = Field(min_length=3)

    model_config = {"extra": "ignore"}


# ---------------------------------------------------------------------------
# KV values
# ---------------------------------------------------------------------------


class TokenLedgerEntry(BaseModel):
    tokens_remaining: int = Field(ge=0)
    email: str
    payment_customer_ref: str | None = None
    last_updated: datetime
    last_bundle_purchased: str
    applied_purchases: list[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class ShippingAddress(BaseModel):
    name: str
    email: str
    address1: str
    address2: str | None = None
    city: str
    state_code: str | None = None
    country_code: str = Field(min_length=2, max_length=2)
    zip: str

    @field_validator("country_code")
    @classmethod
    def _upper_country(cls, v: str) -> str:
        return v.upper()


class StagedItem(BaseModel):
    catalog_variant_id: int
    quantity: int = Field(gt=0)
    design_url: str

    @field_validator("design_url")
    @classmethod
    def _require_http_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("design_url must be an http(s) URL")
        return v


class StagedOrder(BaseModel):
    """Order payload staged by the producer at payment-intent time.

    ``provider_order_id`` and ``items_added`` are progress checkpoints written
    by the print order handler so a redelivered message resumes instead of
    drafting a second order or re-adding line items.
    """

    total_amount_cents: int = Field(gt=0)
    currency: Literal["eur"] = "eur"
    items: list[StagedItem] = Field(min_length=1)
    shipping_address: ShippingAddress
    shipping_option_id: str | None = None
    provider_order_id: int | None = None
    items_added: bool = False
