"""
Case-insensitive duplicate tracking for brands and products.

Brands are keyed by slug. Products are double-keyed by (brand slug, product
slug) so identical product slugs under different brands never collide.
``total_count`` always equals ``brand_count() + product_count()``.
"""

import threading
from typing import Dict, List, Set, Tuple


def normalize_key(key: str) -> str:
    return key.strip().lower()


class DuplicateDetector:
    """Tracks brand and product identifiers already seen during a run."""

    def __init__(self) -> None:
        self.brands: Set[str] = set()
        self.products: Dict[str, Set[str]] = {}
        self._total_count = 0
        self._lock = threading.Lock()

    @property
    def total_count(self) -> int:
        return self._total_count

    def add_brand(self, slug: str) -> bool:
        """Register a brand slug.

        Returns:
            True if the brand was already known (duplicate, nothing changes),
            False if it was inserted.
        """
        key = normalize_key(slug)
        with self._lock:
            if key in self.brands:
                return True
            self.brands.add(key)
            self._total_count += 1
            return False

    def add_product(self, brand_slug: str, product_slug: str) -> bool:
        """Register a product under its brand; same return contract as ``add_brand``."""
        brand_key = normalize_key(brand_slug)
        product_key = normalize_key(product_slug)
        with self._lock:
            product_set = self.products.setdefault(brand_key, set())
            if product_key in product_set:
                return True
            product_set.add(product_key)
            self._total_count += 1
            return False

    def remove_brand(self, slug: str) -> bool:
        """Forget a brand slug. Returns True if it was present."""
        key = normalize_key(slug)
        with self._lock:
            if key not in self.brands:
                return False
            self.brands.discard(key)
            self._total_count -= 1
            return True

    def remove_product(self, brand_slug: str, product_slug: str) -> bool:
        """Forget a product. Returns True if it was present."""
        brand_key = normalize_key(brand_slug)
        product_key = normalize_key(product_slug)
        with self._lock:
            product_set = self.products.get(brand_key)
            if not product_set or product_key not in product_set:
                return False
            product_set.discard(product_key)
            if not product_set:
                del self.products[brand_key]
            self._total_count -= 1
            return True

    def has_brand(self, slug: str) -> bool:
        return normalize_key(slug) in self.brands

    def has_product(self, brand_slug: str, product_slug: str) -> bool:
        product_set = self.products.get(normalize_key(brand_slug))
        return product_set is not None and normalize_key(product_slug) in product_set

    def brand_count(self) -> int:
        return len(self.brands)

    def product_count(self) -> int:
        return sum(len(product_set) for product_set in self.products.values())

    def product_count_by_brand(self, brand_slug: str) -> int:
        return len(self.products.get(normalize_key(brand_slug), ()))

    def clear(self) -> None:
        with self._lock:
            self.brands.clear()
            self.products.clear()
            self._total_count = 0

    def list_brands(self) -> List[str]:
        return list(self.brands)

    def list_products(self) -> List[Tuple[str, str]]:
        """All tracked products as ``(brand_slug, product_slug)`` pairs."""
        return [
            (brand_slug, product_slug)
            for brand_slug, product_set in self.products.items()
            for product_slug in product_set
        ]

    def check_invariant(self) -> bool:
        return self._total_count == self.brand_count() + self.product_count()

    def __repr__(self) -> str:
        return (
            f"DuplicateDetector(brands={self.brand_count()}, "
            f"products={self.product_count()}, total={self._total_count})"
        )


def create_duplicate_detector() -> DuplicateDetector:
    return DuplicateDetector()
