"""
Paginated discovery of brand and product identifiers.

Each call walks one listing (the brand catalog, or one brand's products)
page by page until the listing reports completion, runs out of items, or a
page after the first fails.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Set
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from core.cancellation import CancellationToken, is_cancelled
from core.data_normalizer import extract_slug_from_url, generate_slug
from core.types import Fetcher, PaginationCursor, ParsedList
from utils.error_handling import DiscoveryError, ParsingError
from utils.logger import get_logger

logger = get_logger(__name__)


class DiscoveryState(str, Enum):
    INITIAL = "initial"
    FETCHING = "fetching"
    PARSING = "parsing"
    CONTINUE = "continue"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class DiscoveryResult:
    target: str
    slugs: List[str] = field(default_factory=list)
    iterations: int = 0
    state: DiscoveryState = DiscoveryState.INITIAL
    cursor: Optional[PaginationCursor] = None
    cancelled: bool = False

    @property
    def total_discovered(self) -> int:
        return len(self.slugs)


PageParser = Callable[[str], ParsedList]
IterationHook = Callable[[DiscoveryResult], Awaitable[None]]


def build_page_url(cursor: PaginationCursor) -> str:
    """URL of the page a cursor points at, with ``offset``/``count`` query parameters."""
    parsed = urlparse(cursor.endpoint)
    query = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if key not in ("offset", "count")
    ]
    query.extend([("offset", str(cursor.offset)), ("count", str(cursor.count))])
    return urlunparse(parsed._replace(query=urlencode(query)))


def item_slug(item) -> Optional[str]:
    return extract_slug_from_url(item.source_url) or generate_slug(item.name) or None


class DiscoveryEngine:
    """Runs the fetch/parse/paginate loop for one listing at a time."""

    def __init__(
        self,
        fetcher: Fetcher,
        is_discovery_complete: Callable[[str], bool],
        checkpoint_interval: int = 1,
        checkpoint_callback: Optional[Callable[[DiscoveryResult], Awaitable[None]]] = None,
    ):
        self.fetcher = fetcher
        self.is_discovery_complete = is_discovery_complete
        self.checkpoint_interval = max(1, checkpoint_interval)
        self.checkpoint_callback = checkpoint_callback

    async def discover(
        self,
        target: str,
        start_url: str,
        parse_page: PageParser,
        cancel_token: Optional[CancellationToken] = None,
        start_cursor: Optional[PaginationCursor] = None,
        on_iteration: Optional[IterationHook] = None,
        known_slugs: Sequence[str] = (),
    ) -> DiscoveryResult:
        """Discover every item slug of one listing.

        A failure on the first page raises (``DiscoveryError`` for fetch
        failures, ``ParsingError`` for unparseable pages). Later failures stop
        the walk and return what was gathered so far.

        ``known_slugs`` seeds the result when resuming a walk, so pages
        fetched again only contribute slugs that were not seen before.
        """
        result = DiscoveryResult(target=target, slugs=list(known_slugs), cursor=start_cursor)
        seen_urls: Set[str] = set()
        seen_slugs: Set[str] = set(result.slugs)
        url = build_page_url(start_cursor) if start_cursor else start_url
        cursor = start_cursor
        requested_offset = start_cursor.offset if start_cursor else 0

        while True:
            if is_cancelled(cancel_token):
                result.cancelled = True
                logger.warning(
                    f"Discovery of {target} cancelled after {result.iterations} iterations"
                )
                break

            first_page = result.iterations == 0
            result.iterations += 1
            result.state = DiscoveryState.FETCHING
            fetch_result = await self.fetcher.fetch(url)

            if not fetch_result.ok:
                result.state = DiscoveryState.FAILED
                message = f"Failed to fetch {target} page {url}: {fetch_result.error}"
                if first_page:
                    raise DiscoveryError(message, {"target": target, "url": url})
                logger.warning(message)
                break

            result.state = DiscoveryState.PARSING
            html = fetch_result.content
            if self.is_discovery_complete(html):
                logger.info(f"Discovery of {target} complete: no more results at {url}")
                result.state = DiscoveryState.COMPLETE
                break

            try:
                page = parse_page(html)
            except ParsingError as e:
                result.state = DiscoveryState.FAILED
                if first_page:
                    raise
                logger.warning(f"Failed to parse {target} page {url}: {e}")
                break

            for item in page.items:
                if item.source_url in seen_urls:
                    continue
                seen_urls.add(item.source_url)
                slug = item_slug(item)
                if slug and slug not in seen_slugs:
                    seen_slugs.add(slug)
                    result.slugs.append(slug)

            cursor = page.pagination or cursor
            result.cursor = cursor
            self._log_iteration(result, cursor)

            if on_iteration is not None:
                await on_iteration(result)
            if self.checkpoint_callback and result.iterations % self.checkpoint_interval == 0:
                await self.checkpoint_callback(result)

            if not (
                cursor is not None
                and page.has_more
                and cursor.has_remaining
                and page.items
            ):
                result.state = DiscoveryState.COMPLETE
                break

            next_cursor = cursor.advance(len(page.items))
            # Offsets must strictly grow
            if next_cursor.offset <= requested_offset:
                result.state = DiscoveryState.COMPLETE
                break

            result.state = DiscoveryState.CONTINUE
            cursor = next_cursor
            requested_offset = cursor.offset
            result.cursor = cursor
            url = build_page_url(cursor)

        logger.info(
            f"Discovered {result.total_discovered} {target} in {result.iterations} iterations",
            extra={
                "event_type": "discovery",
                "event_data": {
                    "target": target,
                    "discovered": result.total_discovered,
                    "iterations": result.iterations,
                    "state": result.state.value,
                },
            },
        )
        return result

    def _log_iteration(
        self, result: DiscoveryResult, cursor: Optional[PaginationCursor]
    ) -> None:
        if cursor is not None and cursor.total_count > 0:
            position = min(cursor.offset + cursor.count, cursor.total_count)
            percentage = round(position / cursor.total_count * 100)
            progress = f"{position}/{cursor.total_count} ({percentage}%)"
        else:
            progress = f"{result.total_discovered} items"

        logger.info(
            f"Discovery iteration {result.iterations} for {result.target}: {progress}",
            extra={
                "event_type": "discovery",
                "event_data": {
                    "target": result.target,
                    "iteration": result.iterations,
                    "discovered": result.total_discovered,
                },
            },
        )
