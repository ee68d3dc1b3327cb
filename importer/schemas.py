import datetime
import uuid
from typing import Any, Optional, Union

from django.conf import settings
from ninja import Schema
from pydantic import Field


class ImportRow(Schema):
    """
    One spreadsheet row, already decoded by the client.

    Values are deliberately loosely typed: checks which can fail for a single
    row happen in the import engine so one bad row never rejects the request.
    """

    id: Optional[str] = None  # noqa: A003
    sku: str = ""
    item_name: str = ""
    short_description: str = ""
    long_description: str = ""
    cost_price: float = 0
    retail_price: float = 0
    promotion_price: Optional[float] = None
    promotion_start: Optional[str] = None
    promotion_end: Optional[str] = None
    gross_margin: float = 0
    staff_discount: float = 0
    tax_rate: float = 0
    stock_quantity: int = 0
    reorder_level: int = 0
    shelf_location: str = ""
    weight_volume: float = 0
    unit_of_measure: str = ""
    expiry_date: Optional[str] = None
    category_id: str = ""
    subcategory_id: Optional[str] = None
    brand: str = ""
    supplier: str = ""
    country_of_origin: str = ""
    is_gluten_free: bool = False
    is_vegetarian: bool = False
    is_vegan: bool = False
    is_age_restricted: bool = False
    minimum_age: Optional[int] = None
    allergen_info: str = ""
    storage_type: str = ""
    is_own_brand: bool = False
    online_visible: bool = True
    status: str = "active"
    barcode: Optional[str] = None
    batch_number: str = ""
    pack_size: str = ""
    notes: str = ""
    image_urls: Union[list[Any], str, None] = None
    images_provided: Optional[bool] = None
    tenant_ids: list[str] = []
    tenant_names: Union[list[str], str, None] = None
    delete: bool = False

    @property
    def has_images_field(self) -> bool:
        """
        Whether the row says anything about images. An explicit
        ``images_provided`` wins; otherwise it's whether ``image_urls`` was
        present in the payload at all.
        """
        if self.images_provided is not None:
            return self.images_provided
        return "image_urls" in self.model_fields_set

    @property
    def tenant_name_list(self) -> list[str]:
        names = self.tenant_names
        if not names:
            return []
        if isinstance(names, str):
            names = names.splitlines()
        return [name.strip() for name in names if name and name.strip()]

    @property
    def has_tenant_info(self) -> bool:
        return bool(self.tenant_ids) or bool(self.tenant_name_list)


class ImportRequest(Schema):
    products: list[ImportRow] = Field(
        ..., min_length=1, max_length=settings.IMPORT_MAX_ROWS
    )
    delete_missing: bool = False


class ImportAccepted(Schema):
    job_id: uuid.UUID
    status: str
    total: int


class JobErrorOut(Schema):
    row: int
    product: str
    fields: dict[str, str]


class JobOut(Schema):
    id: uuid.UUID  # noqa: A003
    status: str
    progress: int
    total: int
    processed: int
    created: int
    updated: int
    deleted: int
    failed: int
    errors: list[JobErrorOut]
    started_at: datetime.datetime
    completed_at: Optional[datetime.datetime] = None
