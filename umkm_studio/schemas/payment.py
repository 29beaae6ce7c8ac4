"""Pydantic schemas for credit purchases via Pakasir.

This module defines request and response models for:
- Credit package catalogue
- Payment creation
- Webhook handling
"""

from typing import Optional

from pydantic import BaseModel, Field


class CreditPackage(BaseModel):
    """A purchasable credit package."""

    id: str = Field(description="Package identifier")
    name: str = Field(description="Display name")
    credits: int = Field(description="Credits included in the package")
    price: int = Field(description="Price in IDR")


class CreditPackagesResponse(BaseModel):
    """Response model for listing available packages."""

    packages: list[CreditPackage]


class CreatePaymentRequest(BaseModel):
    """Request model for starting a purchase."""

    package_id: str = Field(description="ID of the credit package to purchase")
    redirect_url: Optional[str] = Field(
        default=None, description="URL to return to after payment"
    )


class CreatePaymentResponse(BaseModel):
    """Response model with the hosted payment page."""

    order_id: str
    payment_url: str
    amount: int
    credits: int


class PakasirWebhookPayload(BaseModel):
    """Webhook body sent by Pakasir when a payment changes status."""

    order_id: str
    amount: int
    status: str
    project: str
    payment_method: Optional[str] = None
    completed_at: Optional[str] = None


class PurchaseResult(BaseModel):
    """Outcome of processing a purchase webhook."""

    ok: bool = True
    credits_added: int = 0
    already_processed: bool = False
    status: Optional[str] = Field(default=None, description="Transaction status after processing")
