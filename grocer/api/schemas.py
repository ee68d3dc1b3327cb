import datetime
import uuid
from decimal import Decimal
from typing import Optional

from ninja import Schema
from pydantic import Field


class ErrorOut(Schema):
    code: str
    message: str


class UploadOut(Schema):
    url: str


class OrderItemIn(Schema):
    product_id: uuid.UUID
    quantity: int = Field(..., ge=1)


class OrderIn(Schema):
    #: Only used when the request is not authenticated
    customer_id: Optional[int] = None
    items: list[OrderItemIn] = Field(..., min_length=1)
    delivery_address: str
    payment_method: str = ""
    latitude: float
    longitude: float


class OrderItemOut(Schema):
    id: uuid.UUID  # noqa: A003
    product_id: uuid.UUID
    product_name: str
    product_sku: str
    image_url: str
    quantity: int
    price: Decimal
    line_total: Decimal


class OrderOut(Schema):
    id: uuid.UUID  # noqa: A003
    order_number: str
    status: str
    tenant_id: Optional[uuid.UUID] = None
    subtotal: Decimal
    delivery_fee: Decimal
    total: Decimal
    delivery_address: str
    payment_method: str
    created_at: datetime.datetime
    items: list[OrderItemOut]


class StatusIn(Schema):
    status: str


class TransitionsOut(Schema):
    status: str
    allowed: list[str]


class NearbyTenantOut(Schema):
    id: uuid.UUID  # noqa: A003
    name: str
    slug: str
    address: str
    distance_km: float
    delivery_radius: float
    delivery_fee: Decimal
    free_delivery_min: Decimal


class CatalogProductOut(Schema):
    id: uuid.UUID  # noqa: A003
    overlay_id: uuid.UUID
    sku: str
    item_name: str
    short_description: str
    category_id: uuid.UUID
    subcategory_id: Optional[uuid.UUID] = None
    brand: str
    status: str
    unit_of_measure: str
    retail_price: Decimal
    promotion_price: Optional[Decimal] = None
    franchise_price: Decimal
    franchise_promo_price: Optional[Decimal] = None
    franchise_stock: int
    shelf_location: str
    is_available: bool
    image_url: Optional[str] = None
    image_urls: list[str]


class PortalProductOut(CatalogProductOut):
    delisted_by_admin: bool


class StockIn(Schema):
    stock_quantity: Optional[int] = Field(None, ge=0)
    reorder_level: Optional[int] = Field(None, ge=0)
    shelf_location: Optional[str] = None
    is_available: Optional[bool] = None


class PricingIn(Schema):
    retail_price_override: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    promotion_price_override: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    promotion_start_override: Optional[datetime.date] = None
    promotion_end_override: Optional[datetime.date] = None


class OverlayIn(StockIn, PricingIn):
    product_id: uuid.UUID


class OverlayOut(Schema):
    id: uuid.UUID  # noqa: A003
    tenant_id: uuid.UUID
    product_id: uuid.UUID
    stock_quantity: int
    reorder_level: int
    shelf_location: str
    is_available: bool
    retail_price_override: Optional[Decimal] = None
    promotion_price_override: Optional[Decimal] = None
    promotion_start_override: Optional[datetime.date] = None
    promotion_end_override: Optional[datetime.date] = None


class OverlayUpdateOut(OverlayOut):
    product_restored: bool
