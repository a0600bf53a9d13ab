"""
Snapshot discovery against the gateway's GraphQL index.

Pages arrive newest-first (HEIGHT_DESC). Each page is reversed on its own to
oldest-first; callers concatenate pages in fetch order. There is no global
sort across pages, so chronological order across pages holds only while the
index's block-height order matches timestamp order.
"""
import asyncio
import json
import ssl
from typing import Any, Dict, List, Optional

import aiohttp
import certifi

from deradar import constants
from deradar.config.config import HistoricalConfig
from deradar.domain.models import SnapshotPage, SnapshotRecord
from deradar.exceptions import IndexFetchError
from deradar.gateway.resolver import EndpointResolver
from deradar.monitoring.logger import get_logger

logger = get_logger(__name__)


def build_page_query(
    owner: str,
    app_name: str,
    first: int,
    after: Optional[str] = None,
) -> str:
    """GraphQL query for one page of owned, app-tagged transactions."""
    after_clause = f'after: {json.dumps(after)}' if after else ""
    return f"""
      query {{
        transactions(
          first: {int(first)}
          {after_clause}
          owners: [{json.dumps(owner)}]
          tags: [{{ name: "{constants.APP_NAME_TAG}", values: [{json.dumps(app_name)}] }}]
          sort: {constants.INDEX_SORT_ORDER}
        ) {{
          edges {{
            cursor
            node {{
              id
              tags {{
                name
                value
              }}
            }}
          }}
          pageInfo {{
            hasNextPage
          }}
        }}
      }}
    """


def _tag_value(tags: List[Dict[str, Any]], name: str) -> Optional[str]:
    for tag in tags if isinstance(tags, list) else []:
        if isinstance(tag, dict) and tag.get("name") == name:
            return tag.get("value")
    return None


def parse_page(body: Any) -> SnapshotPage:
    """
    Turn a GraphQL response body into a chronological page.

    Edges without a non-empty Timestamp tag are dropped. The end cursor is
    taken from the last raw edge, so dropped edges still advance the cursor.
    """
    try:
        transactions = body["data"]["transactions"]
        edges = transactions["edges"]
        has_next_page = bool(transactions["pageInfo"]["hasNextPage"])
    except (KeyError, TypeError) as e:
        errors = body.get("errors") if isinstance(body, dict) else None
        raise IndexFetchError(f"Malformed index response: {errors or e!r}") from e

    if not isinstance(edges, list) or not all(isinstance(edge, dict) for edge in edges):
        raise IndexFetchError("Malformed index response: edges must be a list of objects")

    records: List[SnapshotRecord] = []
    for edge in edges:
        node = edge.get("node") or {}
        if not isinstance(node, dict):
            continue
        tx_id = node.get("id")
        timestamp = _tag_value(node.get("tags") or [], constants.TIMESTAMP_TAG)
        if not tx_id or not timestamp:
            continue
        records.append(SnapshotRecord(id=tx_id, timestamp=timestamp))

    end_cursor = edges[-1].get("cursor") if edges else None

    # Newest-first from the index; playback wants oldest-first.
    records.reverse()
    return SnapshotPage(records=records, has_next_page=has_next_page, end_cursor=end_cursor)


class SnapshotIndex:
    """
    Fetches pages of snapshot records for the configured owner and app tag.
    """

    def __init__(self, resolver: EndpointResolver, config: Optional[HistoricalConfig] = None):
        self.resolver = resolver
        self.config = config or resolver.historical
        self._ssl_context: Optional[ssl.SSLContext] = None

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context(cafile=certifi.where())
        return self._ssl_context

    async def _post_query(self, url: str, query: str) -> Any:
        """POST the query and return the decoded JSON body."""
        connector = aiohttp.TCPConnector(ssl=self._get_ssl_context())
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            async with session.post(url, json={"query": query}) as response:
                if response.status != 200:
                    raise IndexFetchError(f"GraphQL request failed: {response.status}")
                return await response.json(content_type=None)

    async def fetch_page(self, page_size: int, after: Optional[str] = None) -> SnapshotPage:
        """
        Fetch one page of records, oldest-first.

        Never raises for remote failures: the returned page carries ``error``,
        no records and ``has_next_page=False``.
        """
        if page_size < 1:
            raise ValueError("page_size must be >= 1")

        query_url = await self.resolver.resolve(self.config.graphql_url)
        query = build_page_query(self.config.owner, self.config.app_name, page_size, after)

        logger.info("Fetching snapshot page", url=query_url, first=page_size, after=after)
        try:
            body = await self._post_query(query_url, query)
            page = parse_page(body)
        except IndexFetchError as e:
            logger.error("Failed to fetch historical snapshots", error=str(e))
            return SnapshotPage(error=str(e))
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            message = f"Index request failed: {str(e) or type(e).__name__}"
            logger.error("Failed to fetch historical snapshots", error=message)
            return SnapshotPage(error=message)

        logger.info(
            "Snapshot page fetched",
            count=len(page.records),
            has_next_page=page.has_next_page,
            end_cursor=page.end_cursor,
        )
        return page
