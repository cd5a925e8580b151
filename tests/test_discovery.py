"""Tests for paginated discovery."""

import pytest

from core.cancellation import CancellationToken
from core.discovery import DiscoveryEngine, DiscoveryState, build_page_url
from core.types import PaginationCursor
from parsers.catalog_parser import CatalogParser
from utils.error_handling import DiscoveryError, ParsingError

from catalog_pages import BASE_URL, EMPTY_LIST_PAGE, FakeFetcher, brand_list_page

BRANDS_URL = f"{BASE_URL}/tobaccos/brands"


def page_url(offset, count):
    return f"{BRANDS_URL}?offset={offset}&count={count}"


@pytest.fixture
def parser():
    return CatalogParser(BASE_URL)


def make_engine(fetcher, parser, **kwargs):
    return DiscoveryEngine(fetcher, parser.is_discovery_complete, **kwargs)


def test_build_page_url_replaces_existing_offset():
    cursor = PaginationCursor(f"{BRANDS_URL}?sort=new&offset=0", 40, 20, 100)

    assert build_page_url(cursor) == f"{BRANDS_URL}?sort=new&offset=40&count=20"


@pytest.mark.asyncio
async def test_two_pages_discover_every_item(parser):
    fetcher = FakeFetcher(
        {
            BRANDS_URL: brand_list_page(["sarma", "darkside"], ("/tobaccos/brands", 0, 2, 3)),
            page_url(2, 2): brand_list_page(["musthave"], ("/tobaccos/brands", 2, 1, 3)),
        }
    )

    result = await make_engine(fetcher, parser).discover(
        "brands", BRANDS_URL, parser.parse_brand_list
    )

    assert result.slugs == ["sarma", "darkside", "musthave"]
    assert result.iterations == 2
    assert result.state == DiscoveryState.COMPLETE
    assert fetcher.calls == [BRANDS_URL, page_url(2, 2)]


@pytest.mark.asyncio
async def test_repeated_items_are_reported_once(parser):
    fetcher = FakeFetcher(
        {
            BRANDS_URL: brand_list_page(["sarma", "darkside"], ("/tobaccos/brands", 0, 2, 4)),
            page_url(2, 2): brand_list_page(["darkside", "musthave"], ("/tobaccos/brands", 2, 2, 4)),
        }
    )

    result = await make_engine(fetcher, parser).discover(
        "brands", BRANDS_URL, parser.parse_brand_list
    )

    assert result.slugs == ["sarma", "darkside", "musthave"]


@pytest.mark.asyncio
async def test_completion_sentinel_stops_before_parsing(parser):
    fetcher = FakeFetcher({BRANDS_URL: EMPTY_LIST_PAGE})

    def parse_page(html):
        raise AssertionError("sentinel page must not be parsed")

    result = await make_engine(fetcher, parser).discover("brands", BRANDS_URL, parse_page)

    assert result.slugs == []
    assert result.iterations == 1
    assert result.state == DiscoveryState.COMPLETE


@pytest.mark.asyncio
async def test_first_page_fetch_failure_raises(parser):
    with pytest.raises(DiscoveryError):
        await make_engine(FakeFetcher(), parser).discover(
            "brands", BRANDS_URL, parser.parse_brand_list
        )


@pytest.mark.asyncio
async def test_first_page_parse_failure_raises(parser):
    fetcher = FakeFetcher({BRANDS_URL: brand_list_page(["sarma"])})

    def parse_page(html):
        raise ParsingError("broken listing", ".tobacco_list_items", html)

    with pytest.raises(ParsingError):
        await make_engine(fetcher, parser).discover("brands", BRANDS_URL, parse_page)


@pytest.mark.asyncio
async def test_first_page_without_listing_markup_raises(parser):
    fetcher = FakeFetcher({BRANDS_URL: "<html><body><h1>Maintenance</h1></body></html>"})

    with pytest.raises(ParsingError):
        await make_engine(fetcher, parser).discover(
            "brands", BRANDS_URL, parser.parse_brand_list
        )


@pytest.mark.asyncio
async def test_later_page_failure_keeps_partial_results(parser):
    fetcher = FakeFetcher(
        {BRANDS_URL: brand_list_page(["sarma", "darkside"], ("/tobaccos/brands", 0, 2, 10))}
    )

    result = await make_engine(fetcher, parser).discover(
        "brands", BRANDS_URL, parser.parse_brand_list
    )

    assert result.slugs == ["sarma", "darkside"]
    assert result.iterations == 2
    assert result.state == DiscoveryState.FAILED


@pytest.mark.asyncio
async def test_stalled_offset_stops_the_walk(parser):
    fetcher = FakeFetcher(
        {
            BRANDS_URL: brand_list_page(["a", "b"], ("/tobaccos/brands", 0, 2, 10)),
            # The server ignores the requested offset and reports page one again
            page_url(2, 2): brand_list_page(["c", "d"], ("/tobaccos/brands", 0, 2, 10)),
        }
    )

    result = await make_engine(fetcher, parser).discover(
        "brands", BRANDS_URL, parser.parse_brand_list
    )

    assert result.iterations == 2
    assert result.slugs == ["a", "b", "c", "d"]
    assert len(fetcher.calls) == 2


@pytest.mark.asyncio
async def test_cancelled_before_start_returns_empty(parser):
    token = CancellationToken()
    token.cancel("shutdown")
    fetcher = FakeFetcher({BRANDS_URL: brand_list_page(["sarma"])})

    result = await make_engine(fetcher, parser).discover(
        "brands", BRANDS_URL, parser.parse_brand_list, cancel_token=token
    )

    assert result.cancelled
    assert result.iterations == 0
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_cancel_between_pages_keeps_first_page(parser):
    token = CancellationToken()
    fetcher = FakeFetcher(
        {
            BRANDS_URL: brand_list_page(["sarma", "darkside"], ("/tobaccos/brands", 0, 2, 3)),
            page_url(2, 2): brand_list_page(["musthave"], ("/tobaccos/brands", 2, 1, 3)),
        }
    )

    async def on_iteration(result):
        token.cancel("enough")

    result = await make_engine(fetcher, parser).discover(
        "brands",
        BRANDS_URL,
        parser.parse_brand_list,
        cancel_token=token,
        on_iteration=on_iteration,
    )

    assert result.cancelled
    assert result.slugs == ["sarma", "darkside"]
    assert len(fetcher.calls) == 1


@pytest.mark.asyncio
async def test_checkpoint_callback_follows_interval(parser):
    fetcher = FakeFetcher(
        {
            BRANDS_URL: brand_list_page(["a"], ("/tobaccos/brands", 0, 1, 3)),
            page_url(1, 1): brand_list_page(["b"], ("/tobaccos/brands", 1, 1, 3)),
            page_url(2, 1): brand_list_page(["c"], ("/tobaccos/brands", 2, 1, 3)),
        }
    )
    checkpoints = []

    async def on_checkpoint(result):
        checkpoints.append(result.iterations)

    engine = make_engine(fetcher, parser, checkpoint_interval=2, checkpoint_callback=on_checkpoint)
    result = await engine.discover("brands", BRANDS_URL, parser.parse_brand_list)

    assert result.slugs == ["a", "b", "c"]
    assert checkpoints == [2]


@pytest.mark.asyncio
async def test_start_cursor_resumes_mid_listing(parser):
    fetcher = FakeFetcher(
        {page_url(2, 2): brand_list_page(["musthave"], ("/tobaccos/brands", 2, 1, 3))}
    )
    cursor = PaginationCursor(BRANDS_URL, 2, 2, 3)

    result = await make_engine(fetcher, parser).discover(
        "brands", BRANDS_URL, parser.parse_brand_list, start_cursor=cursor
    )

    assert fetcher.calls == [page_url(2, 2)]
    assert result.slugs == ["musthave"]


@pytest.mark.asyncio
async def test_known_slugs_are_kept_once_when_a_page_is_fetched_again(parser):
    fetcher = FakeFetcher(
        {page_url(0, 2): brand_list_page(["sarma", "darkside"], ("/tobaccos/brands", 0, 2, 2))}
    )
    cursor = PaginationCursor(BRANDS_URL, 0, 2, 2)

    result = await make_engine(fetcher, parser).discover(
        "brands",
        BRANDS_URL,
        parser.parse_brand_list,
        start_cursor=cursor,
        known_slugs=["sarma"],
    )

    assert result.slugs == ["sarma", "darkside"]
    assert result.state == DiscoveryState.COMPLETE
