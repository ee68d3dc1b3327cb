import io
from decimal import Decimal
from secrets import token_hex

from django.contrib.auth.models import User
from django.utils.text import slugify
from PIL import Image

from grocer.models import (
    Category,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    ProductImage,
    Subcategory,
    Tenant,
    TenantProduct,
)


def create_user(*, username=None, password="top-secret", **kwargs):
    username = username or f"user-{token_hex(4)}"
    return User.objects.create_user(username=username, password=password, **kwargs)


def create_category(*, name="Fruit", do_save=True, **kwargs):
    category = Category(name=name, **kwargs)
    if do_save:
        category.save()
    return category


def create_subcategory(*, category=None, name="Apples", do_save=True, **kwargs):
    if category is None:
        category = create_category()
    subcategory = Subcategory(category=category, name=name, **kwargs)
    if do_save:
        subcategory.save()
    return subcategory


def create_tenant(
    *,
    name=None,
    slug=None,
    latitude=51.5074,
    longitude=-0.1278,
    delivery_radius=5,
    do_save=True,
    **kwargs,
):
    name = name or f"Store {token_hex(3)}"
    tenant = Tenant(
        name=name,
        slug=slug or slugify(name),
        latitude=latitude,
        longitude=longitude,
        delivery_radius=delivery_radius,
        **kwargs,
    )
    if do_save:
        tenant.save()
    return tenant


def create_product(
    *,
    category=None,
    sku=None,
    item_name="Apple",
    cost_price=Decimal("0.50"),
    retail_price=Decimal("1.50"),
    do_save=True,
    **kwargs,
):
    if category is None:
        category = create_category()
    product = Product(
        category=category,
        sku=sku or f"TEST-{token_hex(4)}",
        item_name=item_name,
        cost_price=cost_price,
        retail_price=retail_price,
        **kwargs,
    )
    if do_save:
        product.save()
    return product


def create_product_image(
    *, product=None, image_url=None, source_url="", is_primary=False, **kwargs
):
    if product is None:
        product = create_product()
    return ProductImage.objects.create(
        product=product,
        image_url=image_url or f"/media/products/{token_hex(4)}.png",
        source_url=source_url,
        is_primary=is_primary,
        **kwargs,
    )


def create_tenant_product(*, tenant=None, product=None, **kwargs):
    if tenant is None:
        tenant = create_tenant()
    if product is None:
        product = create_product()
    kwargs.setdefault("stock_quantity", 10)
    return TenantProduct.objects.create(tenant=tenant, product=product, **kwargs)


def create_order(
    *,
    customer=None,
    tenant=None,
    status=OrderStatus.PENDING,
    subtotal=Decimal("10.00"),
    delivery_fee=Decimal("0"),
    **kwargs,
):
    if customer is None:
        customer = create_user()
    return Order.objects.create(
        customer=customer,
        tenant=tenant,
        status=status,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        total=subtotal + delivery_fee,
        delivery_address=kwargs.pop("delivery_address", "1 Test Street"),
        **kwargs,
    )


def create_order_item(*, order=None, product=None, quantity=1, **kwargs):
    if order is None:
        order = create_order()
    if product is None:
        product = create_product()
    kwargs.setdefault("price", product.retail_price)
    return OrderItem.objects.create(
        order=order,
        product=product,
        product_name=product.item_name,
        product_sku=product.sku,
        quantity=quantity,
        **kwargs,
    )


def image_bytes(format="PNG", size=(4, 4), color="red"):  # noqa: A002
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format=format)
    return buffer.getvalue()
