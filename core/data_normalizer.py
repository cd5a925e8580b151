"""
Normalization and validation of parsed catalog records.

Turns raw ``BrandData``/``ProductData`` into canonical records and checks them
against the field limits before anything reaches storage.
"""

import json
import re
from datetime import UTC, datetime
from typing import Any, List, Optional, Union
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse

from core.types import (
    BrandData,
    NormalizedBrand,
    NormalizedProduct,
    ProductData,
    ValidationResult,
)
from utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://htreviews.org"

MAX_TEXT_LENGTH = 10000
MAX_NAME_LENGTH = 500
MAX_URL_LENGTH = 2000
PREVIEW_LENGTH = 500

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
    }
)

_WHITESPACE_RE = re.compile(r"\s+")


def clean_text(text: Optional[str]) -> str:
    """Trim and collapse whitespace, line breaks included."""
    if text is None:
        return ""
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_url(url: Optional[str], base_url: str = DEFAULT_BASE_URL) -> Optional[str]:
    """Return an absolute URL without tracking parameters, or None if unusable."""
    if not url or not url.strip():
        return None

    try:
        absolute = urljoin(base_url.rstrip("/") + "/", url.strip())
        parsed = urlparse(absolute)
    except ValueError as e:
        logger.warning(f"Failed to normalize URL: {url} ({e})")
        return None

    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        logger.warning(f"Failed to normalize URL: {url}")
        return None

    query = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if key not in TRACKING_PARAMS
    ]
    return urlunparse(parsed._replace(query=urlencode(query)))


def generate_slug(name: str) -> str:
    """Slugify a name: lowercase, ``[a-z0-9-]`` only, single inner hyphens."""
    slug = name.lower().strip()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def extract_slug_from_url(url: Optional[str]) -> Optional[str]:
    """Last non-empty path segment of ``url``."""
    if not url:
        return None
    try:
        path = urlparse(url).path
    except ValueError:
        logger.warning(f"Failed to extract slug from URL: {url}")
        return None
    parts = [part for part in path.split("/") if part]
    return parts[-1] if parts else None


def current_timestamp() -> str:
    return datetime.now(UTC).isoformat()


def is_valid_timestamp(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def validate_url(url: Optional[str], field_name: str, required: bool = False) -> Optional[str]:
    if not url:
        return f"{field_name} is required and cannot be empty" if required else None

    if len(url) > MAX_URL_LENGTH:
        return f"{field_name} exceeds maximum length of {MAX_URL_LENGTH} characters"

    try:
        parsed = urlparse(url)
    except ValueError:
        return f"{field_name} is not a valid URL"
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return f"{field_name} is not a valid URL"
    return None


def validate_text_field(
    value: Optional[str], field_name: str, max_length: int, required: bool
) -> Optional[str]:
    if required and (not value or not value.strip()):
        return f"{field_name} is required and cannot be empty"
    if value and len(value) > max_length:
        return f"{field_name} exceeds maximum length of {max_length} characters"
    return None


def log_invalid_data(data: Any, errors: List[str]) -> None:
    """Log validation errors together with a truncated JSON preview of the record."""
    try:
        payload = data.to_dict() if hasattr(data, "to_dict") else data
        preview = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        if len(preview) > PREVIEW_LENGTH:
            preview = preview[:PREVIEW_LENGTH] + "\n... (truncated)"
    except (TypeError, ValueError):
        preview = "[Unable to serialize data for preview]"

    numbered = "\n".join(f"  {index}. {error}" for index, error in enumerate(errors, 1))
    logger.error(
        f"Invalid data detected:\n{numbered}\nData preview:\n{preview}",
        extra={"event_type": "extraction", "event_data": {"errors": errors}},
    )


class DataNormalizer:
    """Normalizes and validates records against one site's base URL."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL):
        self.base_url = base_url.rstrip("/")

    def _slug_for(self, source_url: Optional[str], name: str) -> str:
        return extract_slug_from_url(source_url) or generate_slug(name)

    def normalize_brand(self, raw: BrandData) -> NormalizedBrand:
        name = clean_text(raw.name)
        source_url = normalize_url(raw.source_url, self.base_url) or raw.source_url
        description = clean_text(raw.description) or None
        return NormalizedBrand(
            slug=self._slug_for(source_url, name),
            name=name,
            description=description,
            image_url=normalize_url(raw.image_url, self.base_url),
            source_url=source_url,
            scraped_at=current_timestamp(),
        )

    def normalize_product(self, raw: ProductData) -> NormalizedProduct:
        name = clean_text(raw.name)
        source_url = normalize_url(raw.source_url, self.base_url) or raw.source_url
        description = clean_text(raw.description) or None
        return NormalizedProduct(
            slug=self._slug_for(source_url, name),
            name=name,
            description=description,
            image_url=normalize_url(raw.image_url, self.base_url),
            source_url=source_url,
            brand_slug=clean_text(raw.brand_slug).lower(),
            scraped_at=current_timestamp(),
        )

    def normalize(self, raw: Union[BrandData, ProductData]):
        if isinstance(raw, ProductData):
            return self.normalize_product(raw)
        return self.normalize_brand(raw)

    def _common_errors(self, record: Union[NormalizedBrand, NormalizedProduct]) -> List[str]:
        checks = [
            validate_text_field(record.slug, "slug", MAX_NAME_LENGTH, True),
            validate_text_field(record.name, "name", MAX_NAME_LENGTH, True),
            validate_text_field(record.description, "description", MAX_TEXT_LENGTH, False),
            validate_url(record.image_url, "imageUrl"),
            validate_url(record.source_url, "sourceUrl", required=True),
        ]
        errors = [error for error in checks if error]
        if not is_valid_timestamp(record.scraped_at):
            errors.append("scrapedAt must be a valid ISO 8601 timestamp")
        return errors

    def validate_brand(self, brand: NormalizedBrand) -> ValidationResult:
        errors = self._common_errors(brand)
        return ValidationResult(is_valid=not errors, errors=errors)

    def validate_product(self, product: NormalizedProduct) -> ValidationResult:
        errors = self._common_errors(product)
        brand_slug_error = validate_text_field(
            product.brand_slug, "brandSlug", MAX_NAME_LENGTH, True
        )
        if brand_slug_error:
            errors.append(brand_slug_error)
        return ValidationResult(is_valid=not errors, errors=errors)

    def validate(self, record: Union[NormalizedBrand, NormalizedProduct]) -> ValidationResult:
        if isinstance(record, NormalizedProduct):
            return self.validate_product(record)
        return self.validate_brand(record)
