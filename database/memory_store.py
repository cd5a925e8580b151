"""In-memory catalog storage for dry runs and tests."""

from __future__ import annotations

import asyncio
import logging
from copy import deepcopy
from datetime import UTC, datetime
from itertools import count
from typing import Any, Dict, List, Optional, Tuple

from core.types import NormalizedBrand, NormalizedProduct, StorageID
from utils.error_handling import PersistenceError

logger = logging.getLogger(__name__)


class InMemoryCatalogStore:
    """Same storage surface as ``DatabaseManager``, kept in dictionaries."""

    def __init__(self) -> None:
        self.brands: Dict[int, Dict[str, Any]] = {}
        self.products: Dict[int, Dict[str, Any]] = {}
        self.metadata: Dict[int, Dict[str, Any]] = {}
        self._brand_ids_by_slug: Dict[str, int] = {}
        self._product_ids: Dict[Tuple[int, str], int] = {}
        self._brand_seq = count(1)
        self._product_seq = count(1)
        self._metadata_seq = count(1)
        self._lock = asyncio.Lock()

    async def upsert_brand(self, brand: NormalizedBrand) -> Dict[str, Any]:
        async with self._lock:
            brand_id = self._brand_ids_by_slug.get(brand.slug)
            if brand_id is None:
                brand_id = next(self._brand_seq)
                self._brand_ids_by_slug[brand.slug] = brand_id
            self.brands[brand_id] = {"id": brand_id, **brand.to_dict()}
        return {"id": brand_id, "slug": brand.slug, "name": brand.name}

    async def get_brand_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        brand_id = self._brand_ids_by_slug.get(slug.strip().lower())
        if brand_id is None:
            return None
        row = self.brands[brand_id]
        return {"id": brand_id, "slug": row["slug"], "name": row["name"]}

    async def search_brands_by_name(self, name: str, limit: int = 10) -> List[Dict[str, Any]]:
        needle = name.strip().lower()
        exact = [row for row in self.brands.values() if row["slug"] == needle]
        partial = [
            row
            for row in self.brands.values()
            if row not in exact and needle in row["name"].lower()
        ]
        return [deepcopy(row) for row in (exact + partial)[:limit]]

    async def create_product(
        self, product: NormalizedProduct, brand_id: StorageID
    ) -> Dict[str, Any]:
        brand_id = int(brand_id)
        if brand_id not in self.brands:
            raise PersistenceError(f"Brand {brand_id} does not exist", {"brand_id": brand_id})

        async with self._lock:
            key = (brand_id, product.slug)
            product_id = self._product_ids.get(key)
            if product_id is None:
                product_id = next(self._product_seq)
                self._product_ids[key] = product_id
            self.products[product_id] = {
                "id": product_id,
                "brand_id": brand_id,
                **product.to_dict(),
            }
        return {"id": product_id, "brand_id": brand_id, "slug": product.slug}

    def products_for_brand(self, brand_id: StorageID) -> List[Dict[str, Any]]:
        return [row for row in self.products.values() if row["brand_id"] == int(brand_id)]

    async def create_metadata(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        metadata_id = next(self._metadata_seq)
        row = {
            "id": metadata_id,
            "operation_type": metadata["operation_type"],
            "status": metadata.get("status", "in_progress"),
            "started_at": metadata.get("started_at") or datetime.now(UTC),
            "completed_at": None,
            "brands_processed": metadata.get("brands_processed", 0),
            "products_processed": metadata.get("products_processed", 0),
            "error_count": metadata.get("error_count", 0),
            "error_details": None,
        }
        self.metadata[metadata_id] = row
        return dict(row)

    async def update_metadata(
        self, metadata_id: StorageID, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        row = self.metadata.get(int(metadata_id))
        if row is None:
            logger.warning(f"Scraping metadata {metadata_id} not found")
            return None
        row.update(fields)
        return dict(row)

    async def increment_error_count(self, metadata_id: StorageID) -> None:
        row = self.metadata.get(int(metadata_id))
        if row is not None:
            row["error_count"] += 1

    async def complete_operation(
        self, metadata_id: StorageID, brands_processed: int, products_processed: int
    ) -> None:
        await self.update_metadata(
            metadata_id,
            {
                "status": "completed",
                "completed_at": datetime.now(UTC),
                "brands_processed": brands_processed,
                "products_processed": products_processed,
            },
        )

    async def fail_operation(self, metadata_id: StorageID, error_details: str) -> None:
        await self.update_metadata(
            metadata_id,
            {
                "status": "failed",
                "completed_at": datetime.now(UTC),
                "error_details": error_details,
            },
        )
