"""Pydantic models for the credit system."""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field


class TransactionType(str, Enum):
    """Types of credit transactions."""
    INITIAL_GRANT = "initial_grant"  # New session
    USAGE = "usage"  # One question sent
    REFUND = "refund"  # Every sage failed
    PURCHASE = "purchase"  # Confirmed credit pack purchase


class CreditProduct(BaseModel):
    """A purchasable credit pack."""
    price_cents: int = Field(..., gt=0)
    credits: int = Field(..., gt=0)


# Credit packs offered at checkout
CREDIT_PRODUCTS: dict[str, CreditProduct] = {
    "credit-50": CreditProduct(price_cents=500, credits=50),
    "credit-100": CreditProduct(price_cents=900, credits=100),
    "credit-200": CreditProduct(price_cents=1500, credits=200),
}


class SessionRequest(BaseModel):
    """Body for opening (or resuming) a session."""
    session_id: str = Field(..., min_length=1, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class SessionBalance(BaseModel):
    """A session and its current credit balance."""
    session_id: str = Field(..., alias="sessionId")
    credits: int = Field(..., ge=0)

    model_config = ConfigDict(populate_by_name=True)


class PurchaseConfirmation(BaseModel):
    """A confirmed purchase of a credit pack, keyed for idempotency."""
    session_id: str = Field(..., min_length=1, alias="sessionId")
    product_id: str = Field(..., alias="productId")
    purchase_id: str = Field(..., min_length=1, alias="purchaseId")

    model_config = ConfigDict(populate_by_name=True)
