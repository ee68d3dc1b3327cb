import re
import threading
from typing import Iterable

from django.conf import settings


class SkuGenerator:
    """
    Hands out sequential SKUs such as ``SKU-000042``.

    The sequence starts above the highest numeric SKU already taken with the
    same prefix. A candidate which is somehow taken anyway (for instance a
    SKU claimed by a row later in the same import) is skipped and the next
    number tried, so generated SKUs never collide with known ones.
    """

    def __init__(self, taken: Iterable[str] = (), prefix=None, width=6):
        self.prefix = settings.IMPORT_SKU_PREFIX if prefix is None else prefix
        self.width = width
        self._lock = threading.Lock()
        self._taken = set()
        self._last = 0
        self._pattern = re.compile(rf"^{re.escape(self.prefix)}(\d+)$")
        for sku in taken:
            self.reserve(sku)

    def reserve(self, sku):
        """Record an externally chosen SKU so it will never be generated."""
        if not sku:
            return
        with self._lock:
            self._taken.add(sku)
            match = self._pattern.match(sku)
            if match:
                self._last = max(self._last, int(match.group(1)))

    def next(self):  # noqa: A003
        with self._lock:
            while True:
                self._last += 1
                candidate = f"{self.prefix}{self._last:0{self.width}d}"
                if candidate not in self._taken:
                    self._taken.add(candidate)
                    return candidate
