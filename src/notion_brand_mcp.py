"""Notion MCP server for a brand directory database.

Exposes a Notion workspace through MCP tools (stdio or streamable HTTP)
and, in HTTP mode, a small JSON API under /api. Page bodies are served as
plain text and database rows as Brand entities; see notion_mapping for
the conversions.

Token: --token-file <path> or the NOTION_API_KEY environment variable.
Port (HTTP mode): --port or MCP_PORT, default 3004.
"""

import asyncio
import json
import logging
import os
import random
import re
from pathlib import Path
from typing import Any, Awaitable, Optional, Sequence

import httpx
from dotenv import find_dotenv, load_dotenv
from mcp.server.fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from notion_mapping import (
    Brand,
    blocks_to_text,
    build_brand_filter,
    build_brand_properties,
    get_bool,
    get_dict,
    get_list,
    get_str,
    page_to_brand,
    pages_to_brands,
    text_to_blocks,
)

logger = logging.getLogger("notion-brand-mcp")

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2022-06-28"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3004

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

# Concurrent in-flight requests per client
MAX_CONCURRENT_REQUESTS = 50

# Current integration tokens start with ntn_, older ones with secret_
API_KEY_PREFIXES = ("ntn_", "secret_")


# =============================================================================
# Errors
# =============================================================================


class NotionResponseError(Exception):
    """A successful Notion response that is not the expected JSON shape."""


class NotionAuthError(Exception):
    """The Notion API rejected the integration token."""


def _compute_retry_delay(attempt: int, retry_after: float | None = None) -> float:
    """Compute exponential backoff delay with jitter for rate limiting.

    Args:
        attempt: Current retry attempt number (0-indexed).
        retry_after: Optional Retry-After header value from server.

    Returns:
        Delay in seconds, including random jitter to prevent thundering herd.
    """
    base_delay = RETRY_BASE_DELAY * (2 ** attempt)
    if retry_after is not None:
        base_delay = max(retry_after, base_delay)
    return base_delay + random.uniform(0, RETRY_JITTER_MAX)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        # HTTP-date form; fall back to plain backoff
        return None


def _http_error_detail(e: httpx.HTTPStatusError, max_len: int = 300) -> str:
    """Extract a truncated error body from an HTTP status error."""
    if e.response is not None:
        return e.response.text[:max_len]
    return str(e)


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., NOT_FOUND, RATE_LIMITED)
        message: Human-readable description
        hint: Suggestion on how to fix the issue
        ref: The reference that failed (for context)

    Returns:
        Formatted error string with hint if provided.
    """
    parts = [f"error: {code} - {message}"]
    if ref:
        parts.append(f"ref: {ref}")
    if hint:
        parts.append(f"hint: {hint}")
    return "\n".join(parts)


HINTS = {
    "invalid_ref": "Pass a Notion UUID (with or without dashes) or a notion.so URL.",
    "ref_gone": "The object may be deleted, in trash, or not shared with this integration.",
    "missing_capability": "Share the page/database with the integration: open in Notion → Share → invite the integration.",
    "rate_limited": "Too many requests. Wait a moment and try again.",
    "invalid_token": "Token is invalid or expired. Check the token file or NOTION_API_KEY.",
}


def _error_from_exception(e: Exception, ref: str | None = None) -> str:
    """Map a client-side failure to a tool error string."""
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        if status == 401:
            return _error("INVALID_TOKEN", "Token is invalid or expired", hint=HINTS["invalid_token"])
        if status == 403:
            return _error(
                "MISSING_CAPABILITY",
                "Integration lacks access to this object",
                hint=HINTS["missing_capability"],
                ref=ref
            )
        if status == 404:
            return _error("NOT_FOUND", "Object not found", hint=HINTS["ref_gone"], ref=ref)
        if status == 429:
            return _error("RATE_LIMITED", "Too many requests", hint=HINTS["rate_limited"])
        return _error("HTTP_ERROR", f"HTTP {status}: {_http_error_detail(e, 100)}", ref=ref)
    if isinstance(e, NotionResponseError):
        return _error("BAD_RESPONSE", str(e), ref=ref)
    if isinstance(e, httpx.HTTPError):
        return _error("HTTP_ERROR", f"{type(e).__name__}: {e}", ref=ref)
    return _error("UNEXPECTED", f"{type(e).__name__}: {e}", ref=ref)


# =============================================================================
# ID Handling
# =============================================================================

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{4}-?[0-9a-f]{12}$',
    re.IGNORECASE
)
NOTION_URL_PATTERN = re.compile(
    r'https?://(?:www\.)?notion\.(?:so|site)/(?:[^/]+/)?([^?#]+)',
    re.IGNORECASE
)


def normalize_uuid(uuid_str: str) -> str:
    """Normalize a UUID to standard format with dashes.

    Raises:
        ValueError: If input is not a valid UUID (wrong length or invalid chars).
    """
    clean = uuid_str.replace('-', '').lower()
    if len(clean) != 32:
        raise ValueError(f"Invalid UUID length: {uuid_str}")
    if not all(c in '0123456789abcdef' for c in clean):
        raise ValueError(f"Invalid UUID characters: {uuid_str}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def resolve_ref(ref: str) -> Optional[str]:
    """Resolve a UUID or Notion URL to a normalized UUID.

    Returns:
        Normalized UUID, or None if ref is neither.
    """
    ref = ref.strip()
    if UUID_PATTERN.match(ref):
        return normalize_uuid(ref)
    match = NOTION_URL_PATTERN.match(ref)
    if not match:
        return None
    # The id is the trailing 32 hex chars, possibly after a title slug
    uuid_match = re.search(
        r'([0-9a-f]{32}|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$',
        match.group(1),
        re.IGNORECASE
    )
    if uuid_match:
        return normalize_uuid(uuid_match.group(1))
    return None


def infer_parent_type(parent_id: str) -> str:
    """Guess the parent kind from how the ID was written.

    Database IDs copied from the Notion UI keep their dashes while page IDs
    are usually taken from URLs without them.
    """
    return "database" if "-" in parent_id else "page"


# =============================================================================
# Notion Client
# =============================================================================


class NotionClient:
    """Async Notion API client shared by every tool and route.

    Created once at startup and passed explicitly; it holds the token, a
    pooled httpx client and a semaphore bounding concurrent requests.
    """

    def __init__(
        self,
        token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        max_concurrency: int = MAX_CONCURRENT_REQUESTS,
        timeout: float = 30.0
    ):
        self._token = token
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(max_concurrency)

    @property
    def token(self) -> str:
        return self._token

    async def __aenter__(self) -> "NotionClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Notion-Version": NOTION_VERSION,
            "Content-Type": "application/json",
        }

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None
    ) -> dict:
        """Make an authenticated request with rate limiting and retry.

        Rate-limited responses (429) are retried with exponential backoff;
        the last one is raised if every attempt is rate limited.

        Raises:
            httpx.HTTPStatusError: Non-2xx response.
            NotionResponseError: 2xx response that is not a JSON object.
        """
        if method not in ("GET", "POST", "PATCH", "DELETE"):
            raise ValueError(f"Unsupported method: {method}")

        url = f"{NOTION_API_BASE}{endpoint}"
        body = (json_body or {}) if method in ("POST", "PATCH") else None

        async with self._semaphore:
            for attempt in range(MAX_RETRIES):
                response = await self._http.request(method, url, headers=self._headers(), json=body)
                if response.status_code == 429 and attempt < MAX_RETRIES - 1:
                    retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                    delay = _compute_retry_delay(attempt, retry_after)
                    logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                    await asyncio.sleep(delay)
                    continue
                break

        if response.is_error:
            logger.error(f"Notion {method} {endpoint} failed ({response.status_code}): {response.text[:300]}")
        response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as e:
            raise NotionResponseError(f"Invalid JSON from {endpoint}: {e}") from e
        if not isinstance(payload, dict):
            raise NotionResponseError(f"Expected a JSON object from {endpoint}")
        return payload

    @staticmethod
    def _results(payload: dict, endpoint: str) -> list:
        results = get_list(payload, "results")
        if results is None:
            raise NotionResponseError(f"Response from {endpoint} has no 'results' list")
        return results

    async def validate_connection(self) -> bool:
        """Check that the token works with a minimal search.

        Raises:
            NotionAuthError: The token was rejected (401).
            httpx.HTTPError: Any other transport or HTTP failure.
        """
        logger.debug("Validating Notion API connection")
        try:
            await self.request("POST", "/search", json_body={"query": "", "page_size": 1})
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                raise NotionAuthError("Notion API token is invalid or expired") from e
            raise
        logger.debug("Notion API connection validated")
        return True

    async def fetch_bot_user(self) -> dict:
        return await self.request("GET", "/users/me")

    async def search(self, query: str, limit: int = 10) -> dict:
        """Search pages and databases by title, most recently edited first.

        Returns:
            Dict with "results", "next_cursor" and "has_more".
        """
        logger.debug(f"Searching Notion for '{query}' (limit {limit})")
        body = {
            "query": query,
            "page_size": limit,
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
        }
        payload = await self.request("POST", "/search", json_body=body)
        results = self._results(payload, "/search")
        logger.debug(f"Search returned {len(results)} result(s)")
        return {
            "results": results,
            "next_cursor": get_str(payload, "next_cursor"),
            "has_more": bool(get_bool(payload, "has_more")),
        }

    async def fetch_page(self, page_id: str) -> dict:
        logger.debug(f"Fetching page {page_id}")
        return await self.request("GET", f"/pages/{page_id}")

    async def fetch_page_children(self, page_id: str) -> list[dict]:
        """Fetch the top-level blocks of a page (first page of results)."""
        endpoint = f"/blocks/{page_id}/children"
        logger.debug(f"Fetching children of {page_id}")
        results = self._results(await self.request("GET", endpoint), endpoint)
        logger.debug(f"Fetched {len(results)} block(s) of {page_id}")
        return results

    async def query_database(
        self,
        database_id: str,
        filter: Optional[dict] = None,
        limit: int = 100
    ) -> list[dict]:
        """Query database rows.

        Args:
            database_id: The database UUID.
            filter: Optional Notion filter object.
            limit: Page size sent to Notion (max 100).

        Returns:
            List of raw page objects.
        """
        endpoint = f"/databases/{database_id}/query"
        logger.debug(f"Querying database {database_id} (limit {limit})")
        body: dict = {"page_size": limit}
        if filter is not None:
            body["filter"] = filter
        results = self._results(await self.request("POST", endpoint, json_body=body), endpoint)
        logger.debug(f"Query returned {len(results)} row(s)")
        return results

    async def create_page(
        self,
        parent_id: str,
        properties: dict,
        children: Optional[list[dict]] = None,
        parent_type: Optional[str] = None
    ) -> dict:
        """Create a page under a database or another page.

        Args:
            parent_id: Parent database or page UUID.
            properties: Notion property bag for the new page.
            children: Optional body blocks.
            parent_type: "database" or "page"; inferred from parent_id if omitted.
        """
        parent_type = parent_type or infer_parent_type(parent_id)
        if parent_type not in ("database", "page"):
            raise ValueError(f"Invalid parent type: {parent_type}")

        logger.debug(f"Creating page under {parent_type} {parent_id}")
        body: dict = {
            "parent": {f"{parent_type}_id": parent_id},
            "properties": properties,
        }
        if children is not None:
            body["children"] = children
        page = await self.request("POST", "/pages", json_body=body)
        logger.debug(f"Created page {get_str(page, 'id') or 'unknown'}")
        return page

    async def update_page(self, page_id: str, properties: dict) -> dict:
        logger.debug(f"Updating page {page_id}")
        return await self.request("PATCH", f"/pages/{page_id}", json_body={"properties": properties})


async def fetch_page_text(client: NotionClient, page_id: str) -> str:
    """Fetch a page body and return it as plain text."""
    return blocks_to_text(await client.fetch_page_children(page_id))


async def query_brands(
    client: NotionClient,
    database_id: str,
    highlighted: Optional[bool] = None,
    services: Optional[Sequence[str]] = None,
    limit: int = 100
) -> list[Brand]:
    """Query a brand database and project the rows into Brands.

    Rows missing an id or a brand name are left out rather than failing
    the query.
    """
    filter_obj = build_brand_filter(highlighted=highlighted, services=services)
    pages = await client.query_database(database_id, filter=filter_obj, limit=limit)
    brands = pages_to_brands(pages)
    if len(brands) < len(pages):
        logger.info(f"Skipped {len(pages) - len(brands)} row(s) of {database_id} without a brand name")
    return brands


# =============================================================================
# Tool Implementations
# =============================================================================


def _json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2)


async def _run(operation: Awaitable[Any], ref: str | None = None) -> str:
    """Await a client operation and format its result or failure."""
    try:
        return _json(await operation)
    except Exception as e:
        logger.warning(f"Notion call failed: {type(e).__name__}: {e}")
        return _error_from_exception(e, ref=ref)


def _invalid_ref(ref: str) -> str:
    return _error("INVALID_ARGUMENT", "Could not resolve reference", hint=HINTS["invalid_ref"], ref=ref)


def _limit(limit: int, maximum: int = 100) -> int:
    return max(1, min(limit, maximum))


async def _check_auth_impl(client: NotionClient) -> str:
    try:
        result = await client.fetch_bot_user()
    except Exception as e:
        return _error_from_exception(e)

    bot_name = get_str(result, "name") or "Unknown"
    bot_type = get_str(result, "type") or "unknown"
    workspace_name = get_str(result, "bot", "workspace_name") or "Unknown workspace"
    return (
        f"authenticated as '{bot_name}' ({bot_type}) "
        f"in workspace '{workspace_name}'"
    )


async def _search_impl(client: NotionClient, query: str, limit: int) -> str:
    return await _run(client.search(query, limit=_limit(limit)))


async def _get_page_impl(client: NotionClient, page_id: str) -> str:
    object_id = resolve_ref(page_id)
    if not object_id:
        return _invalid_ref(page_id)
    return await _run(client.fetch_page(object_id), ref=object_id)


async def _get_page_content_impl(client: NotionClient, page_id: str) -> str:
    object_id = resolve_ref(page_id)
    if not object_id:
        return _invalid_ref(page_id)

    async def content() -> dict:
        blocks = await client.fetch_page_children(object_id)
        return {"content": blocks, "text": blocks_to_text(blocks)}

    return await _run(content(), ref=object_id)


async def _get_page_text_impl(client: NotionClient, page_id: str) -> str:
    object_id = resolve_ref(page_id)
    if not object_id:
        return _invalid_ref(page_id)
    try:
        return await fetch_page_text(client, object_id)
    except Exception as e:
        return _error_from_exception(e, ref=object_id)


async def _query_database_impl(
    client: NotionClient,
    database_id: str,
    filter: Optional[dict],
    limit: int
) -> str:
    object_id = resolve_ref(database_id)
    if not object_id:
        return _invalid_ref(database_id)
    return await _run(client.query_database(object_id, filter=filter, limit=_limit(limit)), ref=object_id)


async def _list_brands_impl(
    client: NotionClient,
    database_id: str,
    highlighted: Optional[bool],
    services: Optional[list[str]],
    limit: int
) -> str:
    object_id = resolve_ref(database_id)
    if not object_id:
        return _invalid_ref(database_id)

    async def brands() -> list[dict]:
        found = await query_brands(
            client, object_id, highlighted=highlighted, services=services, limit=_limit(limit)
        )
        return [brand.to_dict() for brand in found]

    return await _run(brands(), ref=object_id)


async def _create_page_impl(
    client: NotionClient,
    parent_id: str,
    properties: dict,
    text: Optional[str] = None,
    children: Optional[list[dict]] = None,
    parent_type: Optional[str] = None
) -> str:
    if text is not None and children is not None:
        return _error("INVALID_ARGUMENT", "Pass either text or children, not both")
    if parent_type is not None and parent_type not in ("database", "page"):
        return _error("INVALID_ARGUMENT", f"Invalid parent_type: {parent_type}", hint="Use 'database' or 'page'.")

    # Infer from the ID as given; normalized IDs always contain dashes.
    # Page URLs carry a dashed title slug, so URLs default to page parents.
    if parent_type is None:
        parent_type = "page" if NOTION_URL_PATTERN.match(parent_id) else infer_parent_type(parent_id)
    object_id = resolve_ref(parent_id)
    if not object_id:
        return _invalid_ref(parent_id)

    if text is not None:
        children = text_to_blocks(text)
    return await _run(
        client.create_page(object_id, properties, children=children, parent_type=parent_type),
        ref=object_id
    )


async def _update_page_impl(client: NotionClient, page_id: str, properties: dict) -> str:
    object_id = resolve_ref(page_id)
    if not object_id:
        return _invalid_ref(page_id)
    return await _run(client.update_page(object_id, properties), ref=object_id)


def _brand_or_page(page: dict) -> dict:
    brand = page_to_brand(page)
    return brand.to_dict() if brand is not None else page


async def _create_brand_impl(
    client: NotionClient,
    database_id: str,
    name: str,
    text: Optional[str] = None,
    **fields: Any
) -> str:
    object_id = resolve_ref(database_id)
    if not object_id:
        return _invalid_ref(database_id)
    if not name:
        return _error("INVALID_ARGUMENT", "Brand name must not be empty")

    properties = build_brand_properties(name=name, **fields)
    children = text_to_blocks(text) if text is not None else None

    async def create() -> dict:
        page = await client.create_page(object_id, properties, children=children, parent_type="database")
        return _brand_or_page(page)

    return await _run(create(), ref=object_id)


async def _update_brand_impl(client: NotionClient, page_id: str, **fields: Any) -> str:
    object_id = resolve_ref(page_id)
    if not object_id:
        return _invalid_ref(page_id)
    properties = build_brand_properties(**fields)
    if not properties:
        return _error("INVALID_ARGUMENT", "Nothing to update", hint="Pass at least one brand field.")

    async def update() -> dict:
        return _brand_or_page(await client.update_page(object_id, properties))

    return await _run(update(), ref=object_id)


# =============================================================================
# MCP Server
# =============================================================================


def build_server(client: NotionClient, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> FastMCP:
    """Create the MCP server with every tool bound to client."""
    mcp = FastMCP("notion-brand-mcp", host=host, port=port)

    @mcp.tool()
    async def notion_check_auth() -> str:
        """Verify Notion authentication and return workspace info."""
        return await _check_auth_impl(client)

    @mcp.tool()
    async def notion_search(query: str, limit: int = 10) -> str:
        """Search Notion pages and databases by title.

        Args:
            query: Search query (matched against titles).
            limit: Maximum results to return (default 10, max 100).

        Returns:
            JSON with results, next_cursor and has_more.
        """
        return await _search_impl(client, query, limit)

    @mcp.tool()
    async def notion_get_page(page_id: str) -> str:
        """Get a page's metadata and properties.

        Args:
            page_id: Page UUID or Notion URL.
        """
        return await _get_page_impl(client, page_id)

    @mcp.tool()
    async def notion_get_page_content(page_id: str) -> str:
        """Get a page's top-level blocks and their plain-text rendering.

        Paragraphs, headings and list items are included in the text;
        other block types appear only in the raw content.

        Args:
            page_id: Page UUID or Notion URL.

        Returns:
            JSON with "content" (raw blocks) and "text".
        """
        return await _get_page_content_impl(client, page_id)

    @mcp.tool()
    async def notion_get_page_text(page_id: str) -> str:
        """Get a page's body as plain text, paragraphs separated by blank lines.

        Args:
            page_id: Page UUID or Notion URL.
        """
        return await _get_page_text_impl(client, page_id)

    @mcp.tool()
    async def notion_query_database(
        database_id: str,
        filter: Optional[dict] = None,
        limit: int = 100
    ) -> str:
        """Query a database and return raw row pages.

        Args:
            database_id: Database UUID or Notion URL.
            filter: Optional Notion filter object, passed through unchanged.
            limit: Maximum rows (default 100, max 100).
        """
        return await _query_database_impl(client, database_id, filter, limit)

    @mcp.tool()
    async def notion_list_brands(
        database_id: str,
        highlighted: Optional[bool] = None,
        services: Optional[list[str]] = None,
        limit: int = 100
    ) -> str:
        """List brands from a brand database.

        Filters are exclusive: when services is given it replaces the
        highlighted filter, and only its first entry is matched.

        Args:
            database_id: Database UUID or Notion URL.
            highlighted: Only rows whose "00. Highlighted" checkbox matches.
            services: Only rows whose "Services" contain services[0].
            limit: Maximum rows (default 100, max 100).

        Returns:
            JSON list of brands with id, name, services, description,
            website, tagline, slug, media and videos.
        """
        return await _list_brands_impl(client, database_id, highlighted, services, limit)

    @mcp.tool()
    async def notion_create_page(
        parent_id: str,
        properties: dict,
        text: Optional[str] = None,
        children: Optional[list[dict]] = None,
        parent_type: Optional[str] = None
    ) -> str:
        """Create a page.

        Args:
            parent_id: Parent database or page UUID/URL.
            properties: Notion property bag.
            text: Optional body as plain text; blank lines split paragraphs.
            children: Optional body as raw Notion blocks (instead of text).
            parent_type: "database" or "page". If omitted, an ID with
                dashes is treated as a database.
        """
        return await _create_page_impl(client, parent_id, properties, text, children, parent_type)

    @mcp.tool()
    async def notion_update_page(page_id: str, properties: dict) -> str:
        """Update a page's properties.

        Args:
            page_id: Page UUID or Notion URL.
            properties: Notion property bag with the properties to change.
        """
        return await _update_page_impl(client, page_id, properties)

    @mcp.tool()
    async def notion_create_brand(
        database_id: str,
        name: str,
        services: Optional[list[str]] = None,
        description: Optional[str] = None,
        website: Optional[str] = None,
        tagline: Optional[str] = None,
        slug: Optional[str] = None,
        highlighted: Optional[bool] = None,
        text: Optional[str] = None
    ) -> str:
        """Add a brand row to a brand database.

        Args:
            database_id: Database UUID or Notion URL.
            name: Brand name (required).
            services: Service names for the "Services" multi-select.
            description, website, tagline, slug: Optional text fields.
            highlighted: Value of the "00. Highlighted" checkbox.
            text: Optional page body as plain text.

        Returns:
            JSON of the created brand.
        """
        return await _create_brand_impl(
            client, database_id, name, text=text,
            services=services, description=description, website=website,
            tagline=tagline, slug=slug, highlighted=highlighted
        )

    @mcp.tool()
    async def notion_update_brand(
        page_id: str,
        name: Optional[str] = None,
        services: Optional[list[str]] = None,
        description: Optional[str] = None,
        website: Optional[str] = None,
        tagline: Optional[str] = None,
        slug: Optional[str] = None,
        highlighted: Optional[bool] = None
    ) -> str:
        """Update fields of a brand row. Omitted fields are left unchanged.

        Returns:
            JSON of the updated brand.
        """
        return await _update_brand_impl(
            client, page_id,
            name=name, services=services, description=description, website=website,
            tagline=tagline, slug=slug, highlighted=highlighted
        )

    return mcp


# =============================================================================
# HTTP Endpoints (/health, /api/*)
# =============================================================================


async def _json_body(request: Request) -> Optional[dict]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _missing(name: str) -> JSONResponse:
    return JSONResponse({"error": f"Missing parameter '{name}'"}, status_code=400)


def _param_limit(params: dict, default: int) -> int:
    limit = params.get("limit")
    # JSON true/false decode to bool, which is an int subclass
    if isinstance(limit, bool) or not isinstance(limit, int):
        return default
    return _limit(limit)


async def _api_call(operation: Awaitable[Any]) -> JSONResponse:
    try:
        return JSONResponse(await operation)
    except httpx.HTTPStatusError as e:
        return JSONResponse(
            {"error": f"Notion API error {e.response.status_code}: {_http_error_detail(e)}"},
            status_code=502
        )
    except (httpx.HTTPError, NotionResponseError) as e:
        return JSONResponse({"error": f"{type(e).__name__}: {e}"}, status_code=502)


def add_api_routes(app: Starlette, client: NotionClient) -> None:
    """Register /health and the JSON /api routes on app."""

    async def health_endpoint(request: Request) -> JSONResponse:
        """Health check endpoint for easy testing."""
        try:
            result = await client.fetch_bot_user()
            workspace = get_str(result, "bot", "workspace_name") or "connected"
        except Exception as e:
            workspace = f"error: {type(e).__name__}"
        return JSONResponse({"status": "ok", "workspace": workspace})

    async def search_endpoint(request: Request) -> JSONResponse:
        params = await _json_body(request) or {}
        query = get_str(params, "query")
        if query is None:
            return _missing("query")
        limit = _param_limit(params, 10)
        return await _api_call(client.search(query, limit=limit))

    async def get_page_endpoint(request: Request) -> JSONResponse:
        params = await _json_body(request) or {}
        page_id = get_str(params, "page_id")
        if page_id is None:
            return _missing("page_id")
        return await _api_call(client.fetch_page(page_id))

    async def get_page_content_endpoint(request: Request) -> JSONResponse:
        params = await _json_body(request) or {}
        page_id = get_str(params, "page_id")
        if page_id is None:
            return _missing("page_id")

        async def content() -> dict:
            blocks = await client.fetch_page_children(page_id)
            return {"content": blocks, "text": blocks_to_text(blocks)}

        return await _api_call(content())

    async def query_database_endpoint(request: Request) -> JSONResponse:
        params = await _json_body(request) or {}
        database_id = get_str(params, "database_id")
        if database_id is None:
            return _missing("database_id")
        limit = _param_limit(params, 100)
        return await _api_call(
            client.query_database(database_id, filter=get_dict(params, "filter"), limit=limit)
        )

    async def list_brands_endpoint(request: Request) -> JSONResponse:
        params = await _json_body(request) or {}
        database_id = get_str(params, "database_id")
        if database_id is None:
            return _missing("database_id")
        services = [s for s in get_list(params, "services") or [] if isinstance(s, str)]
        limit = _param_limit(params, 100)

        async def brands() -> list[dict]:
            found = await query_brands(
                client, database_id,
                highlighted=get_bool(params, "highlighted"),
                services=services or None,
                limit=limit
            )
            return [brand.to_dict() for brand in found]

        return await _api_call(brands())

    async def create_page_endpoint(request: Request) -> JSONResponse:
        params = await _json_body(request) or {}
        parent_id = get_str(params, "parent_id")
        if parent_id is None:
            return _missing("parent_id")
        properties = get_dict(params, "properties")
        if properties is None:
            return _missing("properties")
        return await _api_call(
            client.create_page(parent_id, properties, children=get_list(params, "content"))
        )

    async def update_page_endpoint(request: Request) -> JSONResponse:
        params = await _json_body(request) or {}
        page_id = get_str(params, "page_id")
        if page_id is None:
            return _missing("page_id")
        properties = get_dict(params, "properties")
        if properties is None:
            return _missing("properties")
        return await _api_call(client.update_page(page_id, properties))

    app.add_route("/health", health_endpoint, methods=["GET"])
    app.add_route("/api/search", search_endpoint, methods=["POST"])
    app.add_route("/api/get_page", get_page_endpoint, methods=["POST"])
    app.add_route("/api/get_page_content", get_page_content_endpoint, methods=["POST"])
    app.add_route("/api/query_database", query_database_endpoint, methods=["POST"])
    app.add_route("/api/list_brands", list_brands_endpoint, methods=["POST"])
    app.add_route("/api/create_page", create_page_endpoint, methods=["POST"])
    app.add_route("/api/update_page", update_page_endpoint, methods=["POST"])


def enable_cors(app: Starlette) -> None:
    """Allow browser clients from any origin to call the routes on app."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )


# =============================================================================
# Main Entry Point
# =============================================================================


def load_env_file(env_file: Optional[str] = None) -> bool:
    """Load variables from a .env file into the process environment.

    Variables already set in the environment are left alone. Without
    env_file, the search starts in the working directory and walks up.

    Returns:
        True if a file was found and set at least one variable.
    """
    path = env_file or find_dotenv(usecwd=True)
    if not path:
        return False
    loaded = load_dotenv(path)
    if loaded:
        logger.info(f"Environment loaded from {path}")
    return loaded


def load_token(token_file: Optional[str]) -> str:
    """Read the API token from token_file, else from NOTION_API_KEY.

    Raises:
        SystemExit: No token could be found.
    """
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        token = token_path.read_text().strip()
        source = str(token_path)
    else:
        token = os.environ.get("NOTION_API_KEY", "").strip()
        source = "NOTION_API_KEY"

    if not token:
        logger.error(f"No Notion token found in {source}")
        raise SystemExit(1)
    if not token.startswith(API_KEY_PREFIXES):
        logger.warning("Notion token format looks unusual; current tokens start with 'ntn_'")
    logger.info(f"Notion token loaded from {source}")
    return token


def resolve_port(port: Optional[int]) -> int:
    """Port from the CLI, else MCP_PORT, else the default."""
    if port is not None:
        return port
    raw = os.environ.get("MCP_PORT")
    if not raw:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        logger.error(f"MCP_PORT must be an integer, got {raw!r}")
        raise SystemExit(1)


async def _validate_token(token: str) -> None:
    # Short-lived client: the server runs on its own event loop
    async with NotionClient(token) as client:
        await client.validate_connection()


def main():
    """Run the Notion brand MCP server.

    Usage:
        notion-brand-mcp --token-file ~/.notion_token          # stdio mode
        notion-brand-mcp --http --port 3004                    # HTTP mode
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion brand directory MCP server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: $NOTION_API_KEY)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server (MCP at /mcp plus /api routes) instead of stdio"
    )
    parser.add_argument("--host", default=DEFAULT_HOST, help="HTTP bind address")
    parser.add_argument("--port", type=int, help="HTTP port (default: $MCP_PORT or 3004)")
    parser.add_argument(
        "--env-file",
        help="Path to a .env file (default: search from the working directory)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    load_env_file(args.env_file)
    token = load_token(args.token_file)
    port = resolve_port(args.port)

    try:
        asyncio.run(_validate_token(token))
    except NotionAuthError as e:
        logger.error(f"{e}. Current tokens look like ntn_xxxxxxxxxx")
        raise SystemExit(1)
    except (httpx.HTTPError, NotionResponseError) as e:
        logger.error(f"Could not connect to Notion: {type(e).__name__}: {e}")
        raise SystemExit(1)
    logger.info("Notion connection validated")

    client = NotionClient(token)
    mcp = build_server(client, host=args.host, port=port)

    if args.http:
        import uvicorn

        app = mcp.streamable_http_app()
        add_api_routes(app, client)
        enable_cors(app)

        logger.info(f"Starting Notion brand MCP server on http://{args.host}:{port}")
        uvicorn.run(app, host=args.host, port=port, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
