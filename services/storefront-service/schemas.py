"""Pydantic schemas for request validation."""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"
PHONE_PATTERN = r"^\+?[0-9\s-]{10,15}$"


class CamelModel(BaseModel):
    """Request body accepting camelCase keys as well as field names."""
    model_config = ConfigDict(populate_by_name=True)


class ProductCreate(BaseModel):
    """Schema for creating a product."""
    name: str = Field(min_length=3, max_length=100)
    price: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    type: str = Field(max_length=50)
    stock: int = Field(default=0, ge=0)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=255)


class ProductUpdate(BaseModel):
    """Schema for a partial product update."""
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    price: Optional[Decimal] = Field(default=None, gt=0, max_digits=12, decimal_places=2)
    type: Optional[str] = Field(default=None, max_length=50)
    stock: Optional[int] = Field(default=None, ge=0)
    subtitle: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = Field(default=None, max_length=255)


class AddToCartRequest(CamelModel):
    """Schema for add to cart request."""
    product_id: int = Field(alias="productId", gt=0)
    quantity: int = Field(ge=1)


class UpdateCartItemRequest(BaseModel):
    """Schema for cart line quantity update; 0 removes the line."""
    quantity: int = Field(ge=0)


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"
    COD = "cod"


class CreditCardDetails(CamelModel):
    method: Literal["credit_card"]
    card_number: str = Field(alias="cardNumber", pattern=r"^[0-9]{13,19}$")
    card_holder_name: str = Field(alias="cardHolderName", min_length=1)
    expiry_month: int = Field(alias="expiryMonth", ge=1, le=12)
    expiry_year: int = Field(alias="expiryYear")
    cvv: str = Field(pattern=r"^[0-9]{3,4}$")

    @field_validator("expiry_year")
    @classmethod
    def not_expired(cls, value: int) -> int:
        if value < datetime.now().year % 100:
            raise ValueError("Card has expired")
        return value


class PayPalDetails(CamelModel):
    method: Literal["paypal"]
    email: str = Field(pattern=EMAIL_PATTERN)


class BankTransferDetails(CamelModel):
    method: Literal["bank_transfer"]
    account_name: str = Field(alias="accountName", min_length=1)
    account_number: str = Field(alias="accountNumber", min_length=1)
    bank_name: str = Field(alias="bankName", min_length=1)


class CashOnDeliveryDetails(CamelModel):
    method: Literal["cod"]


PaymentDetails = Annotated[
    Union[CreditCardDetails, PayPalDetails, BankTransferDetails, CashOnDeliveryDetails],
    Field(discriminator="method"),
]


class CheckoutRequest(CamelModel):
    """Schema for checkout request: shipping snapshot and payment."""
    name: str = Field(min_length=3, max_length=100)
    email: str = Field(pattern=EMAIL_PATTERN)
    phone: str = Field(pattern=PHONE_PATTERN)
    address: str = Field(min_length=10, max_length=255)
    payment_method: PaymentMethod = Field(alias="paymentMethod")
    payment_details: PaymentDetails = Field(alias="paymentDetails")

    @model_validator(mode="before")
    @classmethod
    def tag_payment_details(cls, data: Any) -> Any:
        """Select the payment details schema from the chosen payment method."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        method = data.get("paymentMethod", data.get("payment_method"))
        details = data.pop("paymentDetails", None)
        if details is None:
            details = data.pop("payment_details", None)
        if details is None:
            details = {}
        if isinstance(details, dict):
            details = {**details, "method": method}
        data["paymentDetails"] = details
        return data

    @property
    def shipping_info(self) -> dict:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
        }


class OrderStatusUpdate(BaseModel):
    """Schema for a single order status change."""
    status: str = Field(min_length=1)


class OrderNotesUpdate(BaseModel):
    notes: str = Field(max_length=2000)


class OrderTrackingUpdate(CamelModel):
    tracking_number: str = Field(alias="trackingNumber", min_length=1, max_length=100)


class BulkOrderAction(str, Enum):
    APPROVE = "approve"
    SHIP = "ship"
    DELIVER = "deliver"
    CANCEL = "cancel"


class BulkOrderUpdate(CamelModel):
    """Schema for bulk order status changes."""
    order_ids: List[int] = Field(alias="orderIds", min_length=1)
    action: BulkOrderAction
    force: bool = False
