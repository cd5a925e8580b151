"""Tests for the BeautifulSoup catalog parser."""

import pytest

from parsers.catalog_parser import CatalogParser
from utils.error_handling import ParsingError

from catalog_pages import EMPTY_LIST_PAGE, detail_page, list_item, list_page


@pytest.fixture
def parser():
    return CatalogParser("https://htreviews.org")


def test_parse_brand_list_reads_items_and_pagination(parser):
    html = list_page(
        [
            list_item(
                "/tobaccos/sarma",
                ["Сарма", "Sarma"],
                description="Russian blend",
                image="/img/sarma.png",
            ),
            list_item("/tobaccos/darkside?utm_source=feed", ["Дарксайд", "Darkside"]),
        ],
        pagination=("/tobaccos/brands", 0, 2, 5),
    )

    page = parser.parse_brand_list(html)

    assert [brand.name for brand in page.items] == ["Sarma", "Darkside"]
    assert page.items[0].source_url == "https://htreviews.org/tobaccos/sarma"
    assert page.items[0].description == "Russian blend"
    assert page.items[0].image_url == "https://htreviews.org/img/sarma.png"
    assert page.items[1].source_url == "https://htreviews.org/tobaccos/darkside"
    assert page.has_more is True
    assert page.total_count == 5
    assert page.pagination.endpoint == "https://htreviews.org/tobaccos/brands"
    assert (page.pagination.offset, page.pagination.count) == (0, 2)


def test_parse_product_list_uses_first_name_span(parser):
    html = list_page(
        [list_item("/tobaccos/sarma/cherry", ["Cherry", "Вишня"])],
        pagination=("/tobaccos/sarma", 4, 1, 5),
    )

    page = parser.parse_product_list(html, "sarma")

    assert page.items[0].name == "Cherry"
    assert page.items[0].brand_slug == "sarma"
    assert page.has_more is False


def test_list_without_pagination_has_no_more(parser):
    page = parser.parse_brand_list(list_page([list_item("/tobaccos/sarma", ["Sarma"])]))

    assert page.pagination is None
    assert page.has_more is False


def test_invalid_pagination_numbers_are_ignored(parser):
    html = list_page([list_item("/tobaccos/sarma", ["Sarma"])], ("/tobaccos/brands", "x", 2, 5))

    assert parser.parse_brand_list(html).pagination is None


def test_items_without_link_are_skipped(parser):
    html = list_page(['<div class="tobacco_list_item"><span>orphan</span></div>'])

    assert parser.parse_brand_list(html).items == []


def test_missing_list_container_raises(parser):
    with pytest.raises(ParsingError) as excinfo:
        parser.parse_brand_list("<html><body>" + "x" * 2000 + "</body></html>")

    assert excinfo.value.html.endswith("...")
    assert len(excinfo.value.html) == 503


@pytest.mark.parametrize(
    "html, expected",
    [
        ("<html><body>nothing here</body></html>", False),
        (EMPTY_LIST_PAGE, True),
        (list_page([list_item("/tobaccos/sarma", ["Sarma"])]), False),
        (list_page([list_item("/tobaccos/sarma", ["Sarma"])], ("/tobaccos/brands", 4, 2, 4)), True),
        (list_page([list_item("/tobaccos/sarma", ["Sarma"])], ("/tobaccos/brands", 2, 2, 4)), False),
    ],
)
def test_is_discovery_complete(parser, html, expected):
    assert parser.is_discovery_complete(html) is expected


def test_parse_brand_detail(parser):
    html = detail_page("  Sarma  ", description="Made in Russia", image="/img/sarma.png")

    brand = parser.parse_brand_detail(html, "sarma")

    assert brand.name == "Sarma"
    assert brand.description == "Made in Russia"
    assert brand.image_url == "https://htreviews.org/img/sarma.png"
    assert brand.source_url == "https://htreviews.org/tobaccos/sarma"


def test_parse_product_detail(parser):
    product = parser.parse_product_detail(detail_page("Cherry"), "cherry", "sarma")

    assert product.source_url == "https://htreviews.org/tobaccos/sarma/cherry"
    assert product.brand_slug == "sarma"
    assert product.description is None


def test_detail_without_title_raises(parser):
    with pytest.raises(ParsingError):
        parser.parse_product_detail("<html></html>", "cherry", "sarma")
