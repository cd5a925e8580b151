"""
BeautifulSoup parser for the review site's catalog pages.

List pages render items inside ``.tobacco_list_items`` whose data attributes
carry the HTMX pagination state; detail pages expose the title, description
and image in ``.object_card_*`` blocks.
"""

import logging
from typing import List, Optional

from bs4 import BeautifulSoup, Tag

from core.data_normalizer import DEFAULT_BASE_URL, clean_text, normalize_url
from core.types import BrandData, PaginationCursor, ParsedList, ProductData
from utils.error_handling import ParsingError

logger = logging.getLogger(__name__)

LIST_CONTAINER = ".tobacco_list_items"
LIST_ITEM = ".tobacco_list_item"
ITEM_LINK = ".tobacco_list_item_slug"
ITEM_DESCRIPTION = ".description_content span"
ITEM_IMAGE = ".tobacco_list_item_image img"
DETAIL_TITLE = ".object_card_title h1"
DETAIL_DESCRIPTION = ".object_card_discr span"
DETAIL_IMAGE = ".object_image img"


def _build_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _parse_int(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class CatalogParser:
    """Parses brand and product list/detail pages into raw records."""

    def __init__(self, base_url: str = DEFAULT_BASE_URL):
        self.base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    def parse_pagination(self, container: Optional[Tag]) -> Optional[PaginationCursor]:
        """Read the HTMX pagination attributes of a list container."""
        if container is None:
            return None

        target = container.get("data-target")
        offset = _parse_int(container.get("data-offset"))
        count = _parse_int(container.get("data-count"))
        total_count = _parse_int(container.get("data-total-count"))

        if not target:
            return None
        if offset is None or count is None or total_count is None:
            logger.warning(
                "Invalid pagination data: offset, count, or totalCount is not a number"
            )
            return None

        return PaginationCursor(
            endpoint=f"{self.base_url}{target}",
            offset=offset,
            count=count,
            total_count=total_count,
        )

    # ------------------------------------------------------------------
    # List pages
    # ------------------------------------------------------------------

    def _list_container(self, soup: BeautifulSoup, html: str, label: str) -> Tag:
        container = soup.select_one(LIST_CONTAINER)
        if container is None:
            raise ParsingError(f"{label} list container not found", LIST_CONTAINER, html)
        return container

    def _item_fields(self, item: Tag, prefer_last_name: bool):
        link = item.select_one(ITEM_LINK)
        if link is None:
            logger.warning("List item without link element skipped")
            return None

        spans = link.find_all("span")
        if not spans:
            logger.warning("No name spans found in list item")
            return None
        name = clean_text((spans[-1] if prefer_last_name else spans[0]).get_text())

        source_url = normalize_url(link.get("href"), self.base_url)
        if not source_url:
            logger.warning(f"Failed to normalize URL for item: {name}")
            return None

        description_el = item.select_one(ITEM_DESCRIPTION)
        description = clean_text(description_el.get_text()) if description_el else None

        image_el = item.select_one(ITEM_IMAGE)
        image_url = normalize_url(image_el.get("src"), self.base_url) if image_el else None

        return name, source_url, description or None, image_url

    def _finish_list(self, items: List, pagination: Optional[PaginationCursor]) -> ParsedList:
        if pagination is None:
            return ParsedList(items=items, has_more=False, total_count=0)
        return ParsedList(
            items=items,
            has_more=pagination.offset + len(items) < pagination.total_count,
            total_count=pagination.total_count,
            pagination=pagination,
        )

    def parse_brand_list(self, html: str) -> ParsedList:
        soup = _build_soup(html)
        container = self._list_container(soup, html, "Brand")
        pagination = self.parse_pagination(container)

        brands: List[BrandData] = []
        for item in container.select(LIST_ITEM):
            # Brand cards carry the localized name first and the English one last
            fields = self._item_fields(item, prefer_last_name=True)
            if fields is None:
                continue
            name, source_url, description, image_url = fields
            brands.append(
                BrandData(
                    name=name,
                    source_url=source_url,
                    description=description,
                    image_url=image_url,
                )
            )

        if not brands:
            logger.warning("No brand items found in brand list page")
        return self._finish_list(brands, pagination)

    def parse_product_list(self, html: str, brand_slug: str) -> ParsedList:
        soup = _build_soup(html)
        container = self._list_container(soup, html, "Product")
        pagination = self.parse_pagination(container)

        products: List[ProductData] = []
        for item in container.select(LIST_ITEM):
            fields = self._item_fields(item, prefer_last_name=False)
            if fields is None:
                continue
            name, source_url, description, image_url = fields
            products.append(
                ProductData(
                    name=name,
                    source_url=source_url,
                    brand_slug=brand_slug,
                    description=description,
                    image_url=image_url,
                )
            )

        if not products:
            logger.warning(f"No product items found for brand {brand_slug}")
        return self._finish_list(products, pagination)

    def is_discovery_complete(self, html: str) -> bool:
        """True when a listing page signals there is nothing more to discover.

        Only a recognised list container can signal the end: either it holds
        no items or its pagination offset has reached the total. A page
        without the container is not an end marker; the list parser rejects it.
        """
        soup = _build_soup(html)
        container = soup.select_one(LIST_CONTAINER)
        if container is None:
            return False
        if not container.select(LIST_ITEM):
            return True
        pagination = self.parse_pagination(container)
        return (
            pagination is not None
            and pagination.total_count > 0
            and pagination.offset >= pagination.total_count
        )

    # ------------------------------------------------------------------
    # Detail pages
    # ------------------------------------------------------------------

    def _detail_fields(self, html: str, label: str):
        soup = _build_soup(html)
        title = soup.select_one(DETAIL_TITLE)
        if title is None:
            raise ParsingError(f"{label} name not found", DETAIL_TITLE, html)

        description_el = soup.select_one(DETAIL_DESCRIPTION)
        image_el = soup.select_one(DETAIL_IMAGE)
        return (
            clean_text(title.get_text()),
            (clean_text(description_el.get_text()) or None) if description_el else None,
            normalize_url(image_el.get("src"), self.base_url) if image_el else None,
        )

    def parse_brand_detail(self, html: str, brand_slug: str) -> BrandData:
        name, description, image_url = self._detail_fields(html, "Brand")
        return BrandData(
            name=name,
            source_url=f"{self.base_url}/tobaccos/{brand_slug}",
            description=description,
            image_url=image_url,
        )

    def parse_product_detail(
        self, html: str, product_slug: str, brand_slug: str
    ) -> ProductData:
        name, description, image_url = self._detail_fields(html, "Product")
        return ProductData(
            name=name,
            source_url=f"{self.base_url}/tobaccos/{brand_slug}/{product_slug}",
            brand_slug=brand_slug,
            description=description,
            image_url=image_url,
        )
