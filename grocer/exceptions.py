class GrocerError(Exception):
    """
    Base class for domain errors which are reported back to API callers.

    Subclasses set ``status_code`` and ``code``; the API layer renders them as
    ``{"code": ..., "message": ..., **extra}`` with that HTTP status.
    """

    status_code = 400
    code = "error"

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def as_dict(self):
        return {"code": self.code, "message": self.message, **self.extra}


class InvalidStatusTransition(GrocerError):
    code = "invalid_status_transition"

    def __init__(self, current, requested, allowed):
        super().__init__(
            f"Invalid status transition from '{current}' to '{requested}'",
            **{"from": current, "to": requested, "allowed": list(allowed)},
        )


class InvalidCoordinates(GrocerError):
    code = "invalid_coordinates"


class NoServingTenant(GrocerError):
    code = "no_serving_tenant"


class InsufficientStock(GrocerError):
    code = "insufficient_stock"


class ProductNotDeleted(GrocerError):
    code = "product_not_deleted"


class CategoryInUse(GrocerError):
    status_code = 409
    code = "category_in_use"


class StorageError(GrocerError):
    status_code = 502
    code = "storage_error"


class InvalidPromotionWindow(GrocerError):
    code = "invalid_promotion_window"


class InvalidOrder(GrocerError):
    code = "invalid_order"


class ProductUnavailable(GrocerError):
    code = "product_unavailable"


class InvalidUpload(StorageError):
    status_code = 400
    code = "invalid_upload"
