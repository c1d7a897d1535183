"""
Database Schemas for AgriConnect

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name.

Example: class User -> collection "user"

Products are a tagged union on `buy_type`: every variant carries only the
fields that variant needs, and they all land in the "product" collection.
"""
from datetime import datetime
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, field_validator, model_validator

from database import to_naive_utc

CATEGORIES = (
    "Vegetables",
    "Fruits",
    "Grains & Pulses",
    "Spices & Herbs",
    "Dairy & Milk Products",
    "Animal",
    "Fertilizers",
    "Seeds",
    "Plants",
    "Bio-Fertilizers",
    "Homemade Foods",
    "Farm Tools & Equipment",
    "Dry Fruits & Nuts",
    "Honey & Bee Products",
)

Category = Literal[CATEGORIES]


class BuyType(str, Enum):
    DIRECT_BUY = "direct_buy"
    ENQUIRY = "enquiry"
    AUCTION = "auction"


class OrderStatus(str, Enum):
    CONFIRMED = "Confirmed"
    READY_FOR_PICKUP = "Ready for Pickup"
    COMPLETED = "Completed"


TOOL_CATEGORIES = ("Vehicles", "Tools", "Soil Preparation", "power Tools")


# Users and their carts
class CartItem(BaseModel):
    product_id: str = Field(..., description="Product _id as string, unique within a cart")
    quantity: int = Field(1, ge=1)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Password hash (server-side)")
    cart: List[CartItem] = Field(default_factory=list)


# Product listings, one variant per buy type
class Bid(BaseModel):
    bidder: str = Field(..., description="Bidding user _id as string")
    amount: float = Field(..., gt=0)
    timestamp: datetime


class ProductBase(BaseModel):
    name: str = Field(..., min_length=1)
    location: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    image_url: str = Field(..., min_length=1)
    farmer: str = Field(..., min_length=1, description="Farmer name, not a reference")
    category: Category
    in_stock: bool = True
    organic: bool = False


class DirectBuyProduct(ProductBase):
    buy_type: Literal["direct_buy"] = "direct_buy"
    price: float = Field(..., gt=0)


class EnquiryProduct(ProductBase):
    buy_type: Literal["enquiry"] = "enquiry"


class AuctionProduct(ProductBase):
    buy_type: Literal["auction"] = "auction"
    auction_start_time: datetime
    auction_end_time: datetime
    starting_bid: float = Field(..., gt=0)
    current_price: Optional[float] = None
    highest_bidder: Optional[str] = None
    bids: List[Bid] = Field(default_factory=list)

    @field_validator("auction_start_time", "auction_end_time")
    @classmethod
    def _store_as_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _check_window_and_seed_price(self):
        if self.auction_end_time <= self.auction_start_time:
            raise ValueError("auction_end_time must be after auction_start_time")
        if self.current_price is None:
            self.current_price = self.starting_bid
        return self


Product = Annotated[
    Union[DirectBuyProduct, EnquiryProduct, AuctionProduct],
    Field(discriminator="buy_type"),
]

product_adapter = TypeAdapter(Product)


# Orders placed at checkout
class CustomerDetails(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    preferred_pickup_time: str = ""
    payment_method: Literal["online", "pickup"] = "pickup"
    special_instructions: str = ""


class OrderLineItem(BaseModel):
    product_id: str
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0, description="Price snapshot at checkout")
    quantity: int = Field(1, ge=1)


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    customer_details: CustomerDetails
    products: List[OrderLineItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    farmer: str = Field(..., min_length=1)
    status: OrderStatus = OrderStatus.CONFIRMED


# Tool rentals
class Tool(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: Literal[TOOL_CATEGORIES]
    image_url: Optional[str] = None
    price_per_day: float = Field(..., gt=0)
    location: str = Field(..., min_length=1)
    available: bool = True
    listed_by: str = Field(..., description="Listing user _id as string")


# Delivery log for order status emails
class Notification(BaseModel):
    order_id: str
    recipient: str
    subject: str
    status: Literal["sent", "failed"]
    message_id: Optional[str] = None
    error: Optional[str] = None
