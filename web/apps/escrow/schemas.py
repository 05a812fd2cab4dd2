"""Pydantic schemas for the escrow orders API.

Request DTOs only check shape; business rules (proposal bounds, who may
act, state preconditions) stay in the lifecycle service so every caller
gets the same typed errors.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .domain import Order, OrderMode


class CreateOrderDTO(BaseModel):
    """Schema for opening an order on a product.

    Attributes:
        product_id: Catalog reference of the product to buy.
        mode: ``DIRECT`` or ``NEGOTIATION`` (case-insensitive).
        proposed_price: Required for negotiation, forbidden for direct.
    """

    product_id: str = Field(min_length=1, max_length=64)
    mode: OrderMode = OrderMode.DIRECT
    proposed_price: Optional[Decimal] = None

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v):
        return v.upper() if isinstance(v, str) else v


class ProposalDTO(BaseModel):
    proposed_price: Decimal


class RejectDTO(BaseModel):
    confirm: bool = False

    @field_validator("confirm")
    @classmethod
    def must_confirm(cls, v: bool) -> bool:
        if not v:
            raise ValueError("Rejecting a proposal must be confirmed")
        return v


class OrderReadDTO(BaseModel):
    """Read model returned by every order endpoint."""

    id: str
    buyer_id: str
    seller_id: str
    product_id: str
    mode: str
    status: str
    escrow_state: str
    negotiation_state: Optional[str] = None
    listing_price: Decimal
    proposed_price: Optional[Decimal] = None
    final_price: Optional[Decimal] = None
    payable_amount: Decimal
    escrow_reference: Optional[str] = None
    release_reference: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        negotiation = order.negotiation_state
        return cls(
            id=order.id,
            buyer_id=order.buyer_id,
            seller_id=order.seller_id,
            product_id=order.product_id,
            mode=order.mode.value,
            status=order.status.value,
            escrow_state=order.escrow_state.value,
            negotiation_state=negotiation.value if negotiation else None,
            listing_price=order.listing_price,
            proposed_price=order.proposed_price,
            final_price=order.final_price,
            payable_amount=order.payable_amount,
            escrow_reference=order.escrow_reference,
            release_reference=order.release_reference,
            version=order.version,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class MessageReadDTO(BaseModel):
    author_id: str
    text: str
    created_at: Optional[datetime] = None
