"""
Base data types for the catalog scraper.

This module holds the canonical records, the parsing intermediates, the
pagination cursor and the Protocol classes describing the fetch, parse and
storage collaborators consumed by the orchestration engine.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Union,
    runtime_checkable,
)


# ============================================================================
# Базовые типы данных
# ============================================================================

URL = str
Slug = str
StorageID = Union[int, str]
HTMLContent = str
Timestamp = str


# ============================================================================
# Parsed (raw) records
# ============================================================================


@dataclass
class BrandData:
    """Brand fields as extracted from HTML, before normalization."""

    name: str
    source_url: URL
    description: Optional[str] = None
    image_url: Optional[URL] = None


@dataclass
class ProductData:
    """Product fields as extracted from HTML, before normalization."""

    name: str
    source_url: URL
    brand_slug: Slug
    description: Optional[str] = None
    image_url: Optional[URL] = None


RawRecord = Union[BrandData, ProductData]


# ============================================================================
# Normalized records
# ============================================================================


@dataclass
class NormalizedBrand:
    """Canonical record for one brand."""

    slug: Slug
    name: str
    source_url: URL
    scraped_at: Timestamp
    description: Optional[str] = None
    image_url: Optional[URL] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class NormalizedProduct:
    """Canonical record for one product, scoped to its brand by ``brand_slug``."""

    slug: Slug
    name: str
    source_url: URL
    brand_slug: Slug
    scraped_at: Timestamp
    description: Optional[str] = None
    image_url: Optional[URL] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


NormalizedRecord = Union[NormalizedBrand, NormalizedProduct]


@dataclass
class ValidationResult:
    """Result of record validation."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)


# ============================================================================
# Pagination
# ============================================================================


@dataclass(frozen=True)
class PaginationCursor:
    """Position of one listing page inside a paginated listing."""

    endpoint: URL
    offset: int
    count: int
    total_count: int

    @property
    def next_offset(self) -> int:
        return self.offset + self.count

    @property
    def has_remaining(self) -> bool:
        return self.offset + self.count < self.total_count

    def advance(self, returned: int) -> "PaginationCursor":
        """Cursor for the following page, moved by the items actually returned."""
        return replace(self, offset=self.offset + returned, count=returned)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaginationCursor":
        return cls(
            endpoint=data["endpoint"],
            offset=int(data["offset"]),
            count=int(data["count"]),
            total_count=int(data["total_count"]),
        )


@dataclass
class ParsedList:
    """One parsed listing page."""

    items: List[RawRecord]
    has_more: bool
    total_count: int = 0
    pagination: Optional[PaginationCursor] = None


# ============================================================================
# Fetch results
# ============================================================================


@dataclass
class FetchResult:
    """Outcome of one fetch. Failures are reported as data, never raised."""

    success: bool
    url: URL
    content: Optional[HTMLContent] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration: float = 0.0
    retry_count: int = 0

    @property
    def ok(self) -> bool:
        return self.success and self.content is not None


# ============================================================================
# Collaborator protocols
# ============================================================================


@runtime_checkable
class Fetcher(Protocol):
    """Anything able to fetch a URL without raising."""

    async def fetch(self, url: URL) -> FetchResult:
        ...


@runtime_checkable
class CatalogParserProtocol(Protocol):
    """HTML to record parsing for brand and product pages."""

    def parse_brand_list(self, html: HTMLContent) -> ParsedList:
        ...

    def parse_product_list(self, html: HTMLContent, brand_slug: Slug) -> ParsedList:
        ...

    def parse_brand_detail(self, html: HTMLContent, brand_slug: Slug) -> BrandData:
        ...

    def parse_product_detail(
        self, html: HTMLContent, product_slug: Slug, brand_slug: Slug
    ) -> ProductData:
        ...

    def is_discovery_complete(self, html: HTMLContent) -> bool:
        ...


@runtime_checkable
class CatalogStorage(Protocol):
    """Persistence of catalog records and scraping operation metadata."""

    async def upsert_brand(self, brand: NormalizedBrand) -> Dict[str, Any]:
        ...

    async def create_product(
        self, product: NormalizedProduct, brand_id: StorageID
    ) -> Dict[str, Any]:
        ...

    async def get_brand_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        ...

    async def search_brands_by_name(
        self, name: str, limit: int = 10
    ) -> Sequence[Dict[str, Any]]:
        ...

    async def create_metadata(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update_metadata(
        self, metadata_id: StorageID, fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        ...

    async def increment_error_count(self, metadata_id: StorageID) -> None:
        ...

    async def complete_operation(
        self, metadata_id: StorageID, brands_processed: int, products_processed: int
    ) -> None:
        ...

    async def fail_operation(self, metadata_id: StorageID, error_details: str) -> None:
        ...
