import uuid
from typing import Optional

from django.contrib.auth import get_user_model
from django.http import HttpRequest
from django.shortcuts import get_object_or_404
from ninja import File, NinjaAPI, Router
from ninja.errors import HttpError
from ninja.files import UploadedFile

from grocer.exceptions import GrocerError
from grocer.logging import GrocerLogger
from grocer.models import Order, Product, Tenant, TenantProduct
from grocer.orders import change_order_status, place_order
from grocer.overlay import (
    assign_product,
    delete_overlay,
    list_portal_products,
    list_tenant_catalog,
    restore_product,
    update_overlay_pricing,
    update_overlay_stock,
)
from grocer.routing import serving_tenants
from grocer.storage import ObjectStorageGateway
from importer.engine import start_import
from importer.exceptions import JobNotFound
from importer.jobs import JobStatus, registry
from importer.schemas import ImportAccepted, ImportRequest, JobOut
from importer.utils import parse_uuid

from .schemas import (
    CatalogProductOut,
    ErrorOut,
    NearbyTenantOut,
    OrderIn,
    OrderOut,
    OverlayIn,
    OverlayOut,
    OverlayUpdateOut,
    PortalProductOut,
    PricingIn,
    StatusIn,
    StockIn,
    TransitionsOut,
    UploadOut,
)

structured_logger = GrocerLogger.get_logger(__name__)

api = NinjaAPI(version=None, urls_namespace="api", title="Grocer API")


@api.exception_handler(GrocerError)
def grocer_error(request: HttpRequest, exc: GrocerError):
    return api.create_response(request, exc.as_dict(), status=exc.status_code)


def tenant_actor(tenant_id):
    return f"tenant:{tenant_id}"


def serialize_order(order):
    return {
        "id": order.pk,
        "order_number": order.order_number,
        "status": order.status,
        "tenant_id": order.tenant_id,
        "subtotal": order.subtotal,
        "delivery_fee": order.delivery_fee,
        "total": order.total,
        "delivery_address": order.delivery_address,
        "payment_method": order.payment_method,
        "created_at": order.created_at,
        "items": [
            {
                "id": item.pk,
                "product_id": item.product_id,
                "product_name": item.product_name,
                "product_sku": item.product_sku,
                "image_url": item.image_url,
                "quantity": item.quantity,
                "price": item.price,
                "line_total": item.line_total,
            }
            for item in order.items.all()
        ],
    }


def serialize_overlay_update(overlay, restored):
    return {**OverlayOut.from_orm(overlay).model_dump(), "product_restored": restored}


products = Router(tags=["products"])


@products.post("/import", response={202: ImportAccepted})
def import_products(request: HttpRequest, payload: ImportRequest):
    """
    Start a background import of up to IMPORT_MAX_ROWS product rows. Poll
    ``/jobs/{job_id}`` for progress.
    """
    job = start_import(payload.products, payload.delete_missing)

    structured_logger.info(
        "Product import accepted.",
        event_code="import_job_accepted",
        job=job,
        total=job.total,
        delete_missing=payload.delete_missing,
    )
    return 202, {"job_id": job.id, "status": JobStatus.PROCESSING, "total": job.total}


jobs = Router(tags=["jobs"])


@jobs.get("/{job_id}", response=JobOut)
def job_detail(request: HttpRequest, job_id: str):
    parsed = parse_uuid(job_id)
    if parsed is None:
        raise HttpError(400, f"{job_id!r} is not a valid job id")

    try:
        job = registry.get(parsed)
    except JobNotFound:
        raise HttpError(404, "Import job not found") from None

    return job.as_dict()


orders = Router(tags=["orders"])


@orders.post("", response={201: OrderOut, 400: ErrorOut})
def create_order(request: HttpRequest, payload: OrderIn):
    if request.user.is_authenticated:
        customer = request.user
    elif payload.customer_id is not None:
        customer = get_object_or_404(get_user_model(), pk=payload.customer_id)
    else:
        raise HttpError(400, "A customer is required")

    order = place_order(
        customer,
        [item.model_dump() for item in payload.items],
        delivery_address=payload.delivery_address,
        latitude=payload.latitude,
        longitude=payload.longitude,
        payment_method=payload.payment_method,
    )
    return 201, serialize_order(order)


@orders.get("/{order_id}", response=OrderOut)
def order_detail(request: HttpRequest, order_id: uuid.UUID):
    return serialize_order(get_object_or_404(Order, pk=order_id))


@orders.get("/{order_id}/transitions", response=TransitionsOut)
def order_transitions(request: HttpRequest, order_id: uuid.UUID):
    order = get_object_or_404(Order, pk=order_id)
    return {"status": order.status, "allowed": list(order.allowed_transitions())}


@orders.patch("/{order_id}/status", response={200: OrderOut, 400: ErrorOut})
def update_order_status(request: HttpRequest, order_id: uuid.UUID, payload: StatusIn):
    order = get_object_or_404(Order, pk=order_id)
    actor = f"user:{request.user.pk}" if request.user.is_authenticated else "customer"
    return serialize_order(change_order_status(order, payload.status, actor=actor))


tenants = Router(tags=["tenants"])


@tenants.get("/nearby", response=list[NearbyTenantOut])
def nearby_tenants(request: HttpRequest, lat: float, lng: float):
    return [
        {
            "id": candidate.tenant.pk,
            "name": candidate.tenant.name,
            "slug": candidate.tenant.slug,
            "address": candidate.tenant.address,
            "distance_km": round(candidate.distance_km, 3),
            "delivery_radius": candidate.tenant.delivery_radius,
            "delivery_fee": candidate.tenant.delivery_fee,
            "free_delivery_min": candidate.tenant.free_delivery_min,
        }
        for candidate in serving_tenants(lat, lng)
    ]


@tenants.get("/{tenant_id}/products", response=list[CatalogProductOut])
def tenant_catalog(
    request: HttpRequest, tenant_id: uuid.UUID, category_id: Optional[uuid.UUID] = None
):
    tenant = get_object_or_404(Tenant, pk=tenant_id, is_active=True)
    return list_tenant_catalog(tenant, category_id=category_id)


@tenants.patch(
    "/{tenant_id}/orders/{order_id}/status", response={200: OrderOut, 400: ErrorOut}
)
def update_tenant_order_status(
    request: HttpRequest, tenant_id: uuid.UUID, order_id: uuid.UUID, payload: StatusIn
):
    order = get_object_or_404(Order, pk=order_id, tenant_id=tenant_id)
    return serialize_order(
        change_order_status(order, payload.status, actor=tenant_actor(tenant_id))
    )


portal = Router(tags=["portal"])


def get_portal_overlay(tenant_id, product_id):
    return get_object_or_404(
        TenantProduct.objects.select_related("product", "tenant"),
        tenant_id=tenant_id,
        product_id=product_id,
    )


@portal.get("/{tenant_id}/products", response=list[PortalProductOut])
def portal_products(request: HttpRequest, tenant_id: uuid.UUID):
    return list_portal_products(get_object_or_404(Tenant, pk=tenant_id))


@portal.patch(
    "/{tenant_id}/products/{product_id}/stock",
    response={200: OverlayUpdateOut, 400: ErrorOut},
)
def portal_update_stock(
    request: HttpRequest, tenant_id: uuid.UUID, product_id: uuid.UUID, payload: StockIn
):
    overlay = get_portal_overlay(tenant_id, product_id)
    restored = update_overlay_stock(
        overlay,
        actor=tenant_actor(tenant_id),
        **payload.model_dump(exclude_unset=True, exclude_none=True),
    )
    return serialize_overlay_update(overlay, restored)


@portal.patch(
    "/{tenant_id}/products/{product_id}/pricing",
    response={200: OverlayUpdateOut, 400: ErrorOut},
)
def portal_update_pricing(
    request: HttpRequest,
    tenant_id: uuid.UUID,
    product_id: uuid.UUID,
    payload: PricingIn,
):
    overlay = get_portal_overlay(tenant_id, product_id)
    # An explicit null clears an override
    restored = update_overlay_pricing(
        overlay,
        actor=tenant_actor(tenant_id),
        **payload.model_dump(exclude_unset=True),
    )
    return serialize_overlay_update(overlay, restored)


@portal.post(
    "/{tenant_id}/products/{product_id}/restore",
    response={200: OverlayUpdateOut, 400: ErrorOut},
)
def portal_restore_product(
    request: HttpRequest, tenant_id: uuid.UUID, product_id: uuid.UUID
):
    overlay = get_portal_overlay(tenant_id, product_id)
    restore_product(overlay, actor=tenant_actor(tenant_id))
    return serialize_overlay_update(overlay, True)


@portal.delete("/{tenant_id}/products/{product_id}", response={204: None})
def portal_delete_product(
    request: HttpRequest, tenant_id: uuid.UUID, product_id: uuid.UUID
):
    delete_overlay(
        get_portal_overlay(tenant_id, product_id), actor=tenant_actor(tenant_id)
    )
    return 204, None


admin = Router(tags=["admin"])


@admin.get("/tenants/{tenant_id}/products", response=list[OverlayOut])
def admin_tenant_products(request: HttpRequest, tenant_id: uuid.UUID):
    tenant = get_object_or_404(Tenant, pk=tenant_id)
    return TenantProduct.objects.filter(tenant=tenant).order_by("created_at")


@admin.post(
    "/tenants/{tenant_id}/products", response={200: OverlayOut, 201: OverlayOut}
)
def admin_assign_product(
    request: HttpRequest, tenant_id: uuid.UUID, payload: OverlayIn
):
    tenant = get_object_or_404(Tenant, pk=tenant_id)
    product = get_object_or_404(Product, pk=payload.product_id)

    # Stock fields can't be cleared; a null price override clears it
    values = {
        name: value
        for name, value in payload.model_dump(
            exclude_unset=True, exclude={"product_id"}
        ).items()
        if value is not None or name in PricingIn.model_fields
    }

    overlay, created = assign_product(tenant, product, **values)
    return (201 if created else 200), overlay


@admin.delete("/tenants/{tenant_id}/products/{product_id}", response={204: None})
def admin_remove_product(
    request: HttpRequest, tenant_id: uuid.UUID, product_id: uuid.UUID
):
    overlay = get_object_or_404(
        TenantProduct.objects.select_related("product", "tenant"),
        tenant_id=tenant_id,
        product_id=product_id,
    )
    delete_overlay(overlay, actor="admin")
    return 204, None


uploads = Router(tags=["uploads"])


@uploads.post("/products", response={201: UploadOut, 400: ErrorOut, 502: ErrorOut})
def upload_product_image(request: HttpRequest, file: UploadedFile = File(...)):
    url = ObjectStorageGateway().upload_product_image(
        file, file.name, file.content_type
    )
    return 201, {"url": url}


@uploads.post("/promotions", response={201: UploadOut, 400: ErrorOut, 502: ErrorOut})
def upload_promotion_image(request: HttpRequest, file: UploadedFile = File(...)):
    url = ObjectStorageGateway().upload_promotion_image(
        file, file.name, file.content_type
    )
    return 201, {"url": url}


api.add_router("/products", products)
api.add_router("/jobs", jobs)
api.add_router("/orders", orders)
api.add_router("/tenants", tenants)
api.add_router("/portal", portal)
api.add_router("/admin", admin)
api.add_router("/uploads", uploads)
