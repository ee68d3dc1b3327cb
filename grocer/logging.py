import warnings
from types import MappingProxyType
from typing import Any, Callable, Optional

import structlog


def get_logging_user_id(user: Any) -> str:
    """
    Return a consistent identifier for logging purposes.

    Anonymous users, and users without a primary key, are logged as
    "anonymous".
    """
    if not getattr(user, "is_authenticated", False):
        return "anonymous"

    user_id = getattr(user, "pk", None)
    if user_id is None:
        return "anonymous"

    return str(user_id)


def _as_str(value):
    return None if value is None else str(value)


# Default global registry for semantic context extractors
_DEFAULT_EXTRACTORS: dict[str, Callable[[Any], dict[str, Any]]] = {}


def _register_default_extractor(
    context_key: str, extractor_function: Callable[[Any], dict[str, Any]]
):
    _DEFAULT_EXTRACTORS[context_key] = extractor_function


_register_default_extractor("user", lambda user: {"user_id": get_logging_user_id(user)})

_register_default_extractor(
    "tenant",
    lambda tenant: {
        "tenant_id": _as_str(getattr(tenant, "pk", None)),
        "tenant_name": getattr(tenant, "name", None),
    },
)

_register_default_extractor(
    "category",
    lambda category: {"category_id": _as_str(getattr(category, "pk", None))},
)

# Chained extractors must be registered after the extractors they call
_register_default_extractor(
    "product",
    lambda product: {
        "product_id": _as_str(getattr(product, "pk", None)),
        "sku": getattr(product, "sku", None),
    },
)

_register_default_extractor(
    "order",
    lambda order: {
        **_DEFAULT_EXTRACTORS["tenant"](getattr(order, "tenant", None)),
        "order_id": _as_str(getattr(order, "pk", None)),
        "order_number": getattr(order, "order_number", None),
        "order_status": getattr(order, "status", None),
    },
)

_register_default_extractor(
    "job",
    lambda job: {
        "job_id": _as_str(getattr(job, "id", None)),
        "job_status": getattr(job, "status", None),
    },
)

# Freeze default extractors to prevent mutation
_DEFAULT_EXTRACTORS = MappingProxyType(_DEFAULT_EXTRACTORS)


class GrocerLogger:
    """
    A structured logging wrapper around structlog that enforces consistent logging
    conventions across the grocer services.

    Every entry needs a human-readable message and a machine-readable
    ``event_code``. Warnings and errors additionally need ``reason`` and
    ``reason_code``.

    Create a logger:
        ```python
        structured_logger = GrocerLogger.get_logger(__name__)
        ```

    Log an event:
        ```python
        structured_logger.info(
            "Import job finished.",
            event_code="import_job_completed",
            job=job,
        )
        ```

    Log a warning:
        ```python
        structured_logger.warning(
            "Image download failed.",
            event_code="import_image_failed",
            reason=str(exc),
            reason_code="download_failed",
            product=product,
        )
        ```

    Special Context Expansion:
    --------------------------

    The logger recognizes certain context object names and extracts fields from
    them automatically:

    - `user` -> `user_id`
    - `tenant` -> `tenant_id`, `tenant_name`
    - `category` -> `category_id`
    - `product` -> `product_id`, `sku`
    - `order` -> `order_id`, `order_number`, `order_status`, tenant fields
    - `job` -> `job_id`, `job_status`

    Explicit values passed (e.g., `product_id=...`) override extracted ones.
    Fields with `None` values are omitted from the final log output.

    `bind()` returns a new logger carrying extra context for every later call,
    for example `structured_logger.bind(job=job)` inside an import job.
    """

    def __init__(self, logger, context: Optional[dict[str, Any]] = None):
        self._logger = logger
        self._context = context or {}
        self._extractors = _DEFAULT_EXTRACTORS.copy()

    @classmethod
    def get_logger(cls, name: str) -> "GrocerLogger":
        """
        Factory method to create a GrocerLogger from a given module name.

        The underlying structlog logger is named ``structlog.<name>`` so the
        ``structlog`` entry of ``settings.LOGGING`` routes it.
        """
        return cls(structlog.get_logger(f"structlog.{name}"))

    def register_extractor(
        self, key: str, extractor: Callable[[Any], dict[str, Any]]
    ) -> None:
        """
        Register a custom context extractor for this logger instance only.
        """
        self._extractors[key] = extractor
        if key in _DEFAULT_EXTRACTORS:
            warnings.warn(
                f"Extractor for '{key}' registered but default extractors may still "
                f"reference the default implementation via chaining. Overriding it "
                f"here will not affect those chained uses.",
                UserWarning,
                stacklevel=2,
            )

    def unregister_extractor(self, key: str) -> None:
        self._extractors.pop(key, None)

    def log(
        self,
        level: str,
        message: str,
        *,
        event_code: str,
        reason: Optional[str] = None,
        reason_code: Optional[str] = None,
        **context: Any,
    ) -> None:
        """
        Emit structured logs with standardized context. Use one of the level
        methods (debug, info, warning, error, exception) instead of calling
        this directly.

        Raises:
            ValueError: If required fields are missing for the given log level.
        """
        if not message:
            raise ValueError("Log message is required.")
        if not event_code:
            raise ValueError("Structured logs must include an 'event_code' field.")
        if level in ("warning", "error") and (not reason or not reason_code):
            raise ValueError(
                "Warnings and errors must include both 'reason' and 'reason_code'."
            )

        context_data = {"event_code": event_code}
        if reason:
            context_data["reason"] = reason
        if reason_code:
            context_data["reason_code"] = reason_code

        bound_context = self._context

        for context_key, extractor_function in self._extractors.items():
            context_object = context.pop(context_key, bound_context.get(context_key))
            if context_object:
                extracted_fields = extractor_function(context_object)
                for key, value in extracted_fields.items():
                    if value is not None:
                        context_data.setdefault(key, value)

        for key, value in bound_context.items():
            if key not in self._extractors and key not in context and value is not None:
                context_data[key] = value

        # Explicit values win over extracted and bound ones
        for key, value in context.items():
            if value is not None:
                context_data[key] = value

        getattr(self._logger, level)(message, **context_data)

    def debug(self, message: str, *, event_code: str, **kwargs):
        """Emit a debug-level structured log."""
        self.log("debug", message, event_code=event_code, **kwargs)

    def info(self, message: str, *, event_code: str, **kwargs):
        """Emit an info-level structured log."""
        self.log("info", message, event_code=event_code, **kwargs)

    def warning(
        self, message: str, *, event_code: str, reason: str, reason_code: str, **kwargs
    ):
        """Emit a warning-level structured log. Requires reason and reason_code."""
        self.log(
            "warning",
            message,
            event_code=event_code,
            reason=reason,
            reason_code=reason_code,
            **kwargs,
        )

    def error(
        self, message: str, *, event_code: str, reason: str, reason_code: str, **kwargs
    ):
        """Emit an error-level structured log. Requires reason and reason_code."""
        self.log(
            "error",
            message,
            event_code=event_code,
            reason=reason,
            reason_code=reason_code,
            **kwargs,
        )

    def exception(
        self, message: str, *, event_code: str, reason: str, reason_code: str, **kwargs
    ):
        """Emit an error-level structured log including the active traceback."""
        kwargs.setdefault("exc_info", True)
        self.error(
            message,
            event_code=event_code,
            reason=reason,
            reason_code=reason_code,
            **kwargs,
        )

    def bind(self, **kwargs: Any) -> "GrocerLogger":
        """
        Return a new GrocerLogger with additional context permanently bound.
        """
        # Kept separately from structlog's own bind so log() can expand
        # bound model instances through the extractors
        new_context = self._context.copy()
        new_context.update(kwargs)
        return GrocerLogger(self._logger, context=new_context)
