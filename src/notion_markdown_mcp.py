"""Notion MCP server speaking Markdown with YAML front matter.

Lets an agent work with Notion through whole documents instead of many small
API calls:
- notion_read: page (and child pages) as Markdown + front matter
- notion_write: create/update pages from the same format, batches split by ===
- notion_list: database rows as a Markdown table, or a page's child pages
- notion_search, notion_update, notion_schema, notion_comment,
  notion_archive, notion_move, notion_check_auth

Token: --token-file <path> CLI argument, or the NOTION_API_KEY environment
variable.
"""

import asyncio
import logging
import math
import os
import random
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import frontmatter
import httpx
import yaml
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("notion-markdown-mcp")


# =============================================================================
# Errors & Self-Healing Messages
# =============================================================================


class NotionMcpError(Exception):
    """Local validation or resolution failure, carrying a stable error code."""

    def __init__(self, message: str, code: str, hint: str | None = None):
        super().__init__(message)
        self.code = code
        self.hint = hint


class NotFoundError(NotionMcpError):
    def __init__(self, message: str):
        super().__init__(message, "NOT_FOUND")


class AmbiguousError(NotionMcpError):
    """Name lookup matched more than one page/database."""

    def __init__(self, message: str, candidates: list[str]):
        super().__init__(message, "AMBIGUOUS")
        self.candidates = candidates


class NotionApiError(Exception):
    """Non-2xx response from the Notion API."""

    def __init__(self, status: int, code: str, message: str):
        super().__init__(message)
        self.status = status
        self.code = code

    @classmethod
    def from_response(cls, response: httpx.Response) -> "NotionApiError":
        code = f"http_{response.status_code}"
        message = response.text[:300]
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            code = body.get("code") or code
            message = body.get("message") or message
        return cls(response.status_code, code, message)


def _error(code: str, message: str, hint: str | None = None, ref: str | None = None) -> str:
    """Format error with optional self-healing hint.

    Args:
        code: Error code (e.g., NOT_FOUND, MISSING_PARENT)
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


# Hints keyed by HTTP status of a failed Notion call
STATUS_HINTS = {
    401: "NOTION_API_KEY is invalid or expired. Check the token file or environment variable.",
    403: "The integration lacks access. Open the page in Notion → ••• → Connect to → select the integration.",
    404: "Page or database not found. Verify the ID/URL and that it is shared with the integration.",
    409: "Conflict with a concurrent edit. Retry the operation.",
    429: "Rate limited by Notion. Wait a moment and try again.",
}

HINTS = {
    "not_found": "Use notion_search to find the page/database by title, or pass its ID/URL.",
    "ambiguous": "Use the ID to specify the exact target.",
    "validation_error": "Check property names and value formats with notion_schema.",
    "auth_missing": "Pass --token-file <path> or set NOTION_API_KEY.",
    "network": "Could not reach api.notion.com. Check connectivity and retry.",
    "frontmatter": "Front matter must be a YAML mapping between two '---' lines.",
}


def format_error(exc: BaseException) -> str:
    """Render any failure as an agent-readable message with a remediation hint."""
    if isinstance(exc, AmbiguousError):
        return _error(exc.code, str(exc), hint=exc.hint or HINTS["ambiguous"])
    if isinstance(exc, NotFoundError):
        return _error(exc.code, str(exc), hint=exc.hint or HINTS["not_found"])
    if isinstance(exc, NotionMcpError):
        return _error(exc.code, str(exc), hint=exc.hint)
    if isinstance(exc, NotionApiError):
        hint = STATUS_HINTS.get(exc.status)
        if exc.code == "validation_error":
            hint = HINTS["validation_error"]
        return _error(exc.code.upper(), f"HTTP {exc.status}: {exc}", hint=hint)
    if isinstance(exc, httpx.HTTPError):
        return _error("NETWORK_ERROR", f"{type(exc).__name__}: {exc}", hint=HINTS["network"])
    return _error("UNEXPECTED", f"{type(exc).__name__}: {exc}")


# =============================================================================
# Notion API Client
# =============================================================================

NOTION_API_BASE = "https://api.notion.com/v1"
NOTION_VERSION = "2025-09-03"

# Retry configuration
MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_JITTER_MAX = 0.5  # max random jitter to add (seconds)

# Notion allows ~3 requests/sec per integration
REQUEST_CONCURRENCY = 3
DELETE_CONCURRENCY = 3
APPEND_BATCH_SIZE = 100

# Block types that live in a page body but are pages/databases themselves
CHILD_OBJECT_BLOCK_TYPES = {"child_page", "child_database"}


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
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class NotionClient:
    """Async Notion API client.

    Constructed once at startup and passed to the Orchestrator. The underlying
    httpx.AsyncClient and the rate-limiting semaphore are created lazily on
    first request and reused afterwards.
    """

    def __init__(self, token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not token:
            raise NotionMcpError("No Notion token configured.", "AUTH_MISSING", hint=HINTS["auth_missing"])
        self._token = token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._semaphore: Optional[asyncio.Semaphore] = None

    @classmethod
    def from_env(cls, variable: str = "NOTION_API_KEY") -> "NotionClient":
        return cls(os.environ.get(variable, "").strip())

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=NOTION_API_BASE,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Notion-Version": NOTION_VERSION,
                    "Content-Type": "application/json",
                },
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(REQUEST_CONCURRENCY)
        return self._semaphore

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def request(
        self,
        method: str,
        endpoint: str,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request with rate limiting and retry.

        Uses a semaphore to limit concurrent requests and exponential backoff
        for rate limit errors (429).

        Raises:
            NotionApiError: For any non-2xx response after retries.
        """
        client = self._get_client()
        async with self._get_semaphore():
            for attempt in range(MAX_RETRIES):
                response = await client.request(method, endpoint, json=json_body, params=params)
                if response.status_code != 429 or attempt == MAX_RETRIES - 1:
                    break
                retry_after = _parse_retry_after(response.headers.get("Retry-After"))
                delay = _compute_retry_delay(attempt, retry_after)
                logger.warning(f"Rate limited, waiting {delay:.1f}s (attempt {attempt + 1})")
                await asyncio.sleep(delay)

        if response.is_error:
            raise NotionApiError.from_response(response)
        return response.json()

    async def _paginate(self, method: str, endpoint: str, params: Optional[dict] = None) -> list[dict]:
        """Collect every result of a cursor-paginated GET endpoint."""
        results: list[dict] = []
        query = dict(params or {})
        query["page_size"] = 100
        while True:
            page = await self.request(method, endpoint, params=query)
            results.extend(page.get("results", []))
            if not page.get("has_more") or not page.get("next_cursor"):
                break
            query["start_cursor"] = page["next_cursor"]
        return results

    # --- pages -------------------------------------------------------------

    async def get_page(self, page_id: str) -> dict:
        page = await self.request("GET", f"/pages/{page_id}")
        if "properties" not in page:
            raise NotionMcpError(f"Incomplete page object returned for {page_id}.", "PARTIAL_RESPONSE")
        return page

    async def create_page(self, body: dict) -> dict:
        return await self.request("POST", "/pages", json_body=body)

    async def update_page(self, page_id: str, body: dict) -> dict:
        return await self.request("PATCH", f"/pages/{page_id}", json_body=body)

    async def archive_page(self, page_id: str) -> dict:
        return await self.request("PATCH", f"/pages/{page_id}", json_body={"archived": True})

    async def move_page(self, page_id: str, parent: dict) -> dict:
        return await self.request("POST", f"/pages/{page_id}/move", json_body={"parent": parent})

    # --- databases (API 2025-09-03: database container → data source) ------

    async def get_database(self, database_id: str) -> dict:
        return await self.request("GET", f"/databases/{database_id}")

    async def get_data_source(self, data_source_id: str) -> dict:
        return await self.request("GET", f"/data_sources/{data_source_id}")

    async def get_database_data_source_id(self, database_id: str) -> str:
        """Return the first data source of a database container."""
        database = await self.get_database(database_id)
        data_sources = database.get("data_sources") or []
        if not data_sources or not data_sources[0].get("id"):
            raise NotionMcpError(
                f"Database {database_id} has no data sources.",
                "NO_DATA_SOURCES",
                hint="Unusual database state. Try opening it in Notion first.",
            )
        return data_sources[0]["id"]

    async def update_data_source(self, data_source_id: str, properties: dict) -> dict:
        return await self.request(
            "PATCH", f"/data_sources/{data_source_id}", json_body={"properties": properties}
        )

    async def query_data_source(
        self,
        data_source_id: str,
        filter_obj: Optional[dict] = None,
        sorts: Optional[list] = None,
        limit: int = 50,
    ) -> tuple[list[dict], bool]:
        """Query data source rows.

        Args:
            data_source_id: The data source UUID (not database UUID).
            filter_obj: Optional filter object.
            sorts: Optional list of sort objects.
            limit: Maximum rows to return (default 50).

        Returns:
            Tuple of (rows, has_more) where:
            - rows: List of page objects (database rows)
            - has_more: True if more rows exist beyond the limit
        """
        rows: list[dict] = []
        start_cursor = None
        has_more = False

        while len(rows) < limit:
            body: dict = {"page_size": min(100, limit - len(rows))}
            if filter_obj:
                body["filter"] = filter_obj
            if sorts:
                body["sorts"] = sorts
            if start_cursor:
                body["start_cursor"] = start_cursor

            result = await self.request("POST", f"/data_sources/{data_source_id}/query", json_body=body)

            rows.extend(result.get("results", []))
            has_more = result.get("has_more", False)

            if not has_more or len(rows) >= limit:
                break
            start_cursor = result.get("next_cursor")

        return rows[:limit], has_more

    # --- blocks --------------------------------------------------------------

    async def list_block_children(self, block_id: str) -> list[dict]:
        return await self._paginate("GET", f"/blocks/{block_id}/children")

    async def fetch_block_tree(self, block_id: str) -> list[dict]:
        """Fetch all children of a block recursively, one request at a time.

        Nested children are attached under the "_children" key. Child pages and
        databases are not descended into.
        """
        blocks = await self.list_block_children(block_id)
        for block in blocks:
            if block.get("has_children") and block.get("type") not in CHILD_OBJECT_BLOCK_TYPES:
                block["_children"] = await self.fetch_block_tree(block["id"])
        return blocks

    async def delete_block(self, block_id: str) -> dict:
        return await self.request("DELETE", f"/blocks/{block_id}")

    async def append_block_children(self, block_id: str, children: list[dict]) -> None:
        """Append blocks in sequential batches of APPEND_BATCH_SIZE."""
        for start in range(0, len(children), APPEND_BATCH_SIZE):
            batch = children[start:start + APPEND_BATCH_SIZE]
            await self.request("PATCH", f"/blocks/{block_id}/children", json_body={"children": batch})

    async def delete_all_blocks(self, page_id: str) -> int:
        """Delete a page's content blocks, DELETE_CONCURRENCY at a time.

        Child pages and child databases are kept: deleting them would trash
        whole subtrees rather than body content.

        Returns:
            Number of blocks deleted.
        """
        blocks = await self.list_block_children(page_id)
        targets = [b["id"] for b in blocks if b.get("type") not in CHILD_OBJECT_BLOCK_TYPES]
        for start in range(0, len(targets), DELETE_CONCURRENCY):
            group = targets[start:start + DELETE_CONCURRENCY]
            # Let the whole group settle before surfacing the first failure
            results = await asyncio.gather(
                *(self.delete_block(block_id) for block_id in group), return_exceptions=True
            )
            for result in results:
                if isinstance(result, BaseException):
                    raise result
        return len(targets)

    async def list_child_pages(self, page_id: str, limit: int = 100) -> list[dict]:
        """Fetch the page/database objects for a page's child_page and child_database blocks.

        Children the integration cannot access are skipped.
        """
        children: list[dict] = []
        for block in await self.list_block_children(page_id):
            if len(children) >= limit:
                break
            block_type = block.get("type")
            if block_type not in CHILD_OBJECT_BLOCK_TYPES:
                continue
            try:
                if block_type == "child_page":
                    children.append(await self.get_page(block["id"]))
                else:
                    children.append(await self.get_database(block["id"]))
            except NotionApiError as e:
                if e.status not in (403, 404):
                    raise
                logger.debug(f"Skipping inaccessible {block_type} {block['id']}: HTTP {e.status}")
        return children

    # --- search, comments, users ------------------------------------------

    async def search(self, query: str, kind: Optional["ResourceKind"] = None, limit: int = 10) -> list[dict]:
        """Search by title, most recently edited first.

        kind restricts results to pages or databases (data sources in API 2025-09-03).
        """
        body: dict = {
            "query": query,
            "page_size": min(limit, 100),
            "sort": {"direction": "descending", "timestamp": "last_edited_time"},
        }
        if kind is ResourceKind.PAGE:
            body["filter"] = {"property": "object", "value": "page"}
        elif kind is ResourceKind.DATABASE:
            body["filter"] = {"property": "object", "value": "data_source"}
        result = await self.request("POST", "/search", json_body=body)
        return result.get("results", [])[:limit]

    async def list_comments(self, block_id: str) -> list[dict]:
        return await self._paginate("GET", "/comments", params={"block_id": block_id})

    async def create_comment(self, page_id: str, rich_text: list[dict]) -> dict:
        return await self.request(
            "POST", "/comments", json_body={"parent": {"page_id": page_id}, "rich_text": rich_text}
        )

    async def get_self(self) -> dict:
        return await self.request("GET", "/users/me")


# =============================================================================
# Identifier Resolver
# =============================================================================

# Regex patterns for ID parsing
UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE
)
HEX_ID_PATTERN = re.compile(r'^[0-9a-f]{32}$', re.IGNORECASE)
# notion.so / notion.site, optional subdomain, workspace segment and title slug
NOTION_URL_PATTERN = re.compile(
    r'^(?:https?://)?(?:[^/]+\.)?notion\.(?:so|site)/(?:[^/]+/)?(?:[^?#]*-)?'
    r'([0-9a-f]{32}|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})'
    r'(?:[?#].*)?$',
    re.IGNORECASE
)


def format_uuid(raw: str) -> str:
    """Normalize a 32-hex or hyphenated ID to lowercase 8-4-4-4-12 form.

    Raises:
        ValueError: If raw is not a Notion ID.
    """
    clean = raw.replace("-", "").lower()
    if not HEX_ID_PATTERN.match(clean):
        raise ValueError(f"Invalid Notion ID: {raw}")
    return f"{clean[:8]}-{clean[8:12]}-{clean[12:16]}-{clean[16:20]}-{clean[20:]}"


def is_notion_id(text: str) -> bool:
    value = text.strip()
    return bool(UUID_PATTERN.match(value) or HEX_ID_PATTERN.match(value))


def is_notion_url(text: str) -> bool:
    return bool(NOTION_URL_PATTERN.match(text.strip()))


def extract_id(text: str) -> str:
    """Return the canonical ID embedded in an ID or Notion URL.

    Anything else (a page/database name) is returned trimmed and unchanged.
    """
    value = text.strip()
    if is_notion_id(value):
        return format_uuid(value)
    match = NOTION_URL_PATTERN.match(value)
    if match:
        return format_uuid(match.group(1))
    return value


class ResourceKind(str, Enum):
    PAGE = "page"
    DATABASE = "database"


@dataclass
class ResourceRef:
    """Resolved pointer to a page or database.

    data_source_id is filled in when it is already known (search results come
    back as data sources in API 2025-09-03).
    """
    id: str
    kind: ResourceKind
    data_source_id: Optional[str] = None


def _plain_text(rich_text: Optional[list]) -> str:
    return "".join(t.get("plain_text", "") for t in rich_text or [])


def get_page_title(page: dict, default: str = "Untitled") -> str:
    """Extract title from page properties."""
    for prop in (page.get("properties") or {}).values():
        if prop.get("type") == "title":
            return _plain_text(prop.get("title")) or default
    return default


def get_database_title(database: dict, default: str = "Untitled") -> str:
    """Extract title from database or data source metadata."""
    return _plain_text(database.get("title")) or default


async def resolve_by_name(client: NotionClient, name: str, kind: Optional[ResourceKind] = None) -> ResourceRef:
    """Resolve an exact (case-sensitive) title to a single page or database.

    Raises:
        NotFoundError: No result has exactly this title.
        AmbiguousError: More than one result has this title.
    """
    results = await client.search(name, kind=kind, limit=5)

    matches: list[ResourceRef] = []
    for item in results:
        obj_type = item.get("object")
        if obj_type == "page":
            title = get_page_title(item, default="")
            ref = ResourceRef(item["id"], ResourceKind.PAGE)
        elif obj_type == "data_source":
            # Register the container database_id, that's what the other tools take
            title = get_database_title(item, default="")
            parent = item.get("parent") or {}
            ref = ResourceRef(parent.get("database_id", item["id"]), ResourceKind.DATABASE, data_source_id=item["id"])
        elif obj_type == "database":
            title = get_database_title(item, default="")
            ref = ResourceRef(item["id"], ResourceKind.DATABASE)
        else:
            continue
        if title == name:
            matches.append(ref)

    label = kind.value if kind else "page or database"
    if not matches:
        raise NotFoundError(f'No {label} titled "{name}" found.')
    if len(matches) > 1:
        candidates = [m.id for m in matches]
        lines = "\n".join(f"  - {c}" for c in candidates)
        raise AmbiguousError(
            f'Multiple {label}s titled "{name}":\n{lines}\nUse ID to specify the exact target.',
            candidates,
        )
    return matches[0]


async def detect_object_type(client: NotionClient, object_id: str) -> ResourceKind:
    """Probe whether an ID is a page or a database.

    Only a 404 on the page fetch means "database"; auth, rate-limit and network
    errors propagate.
    """
    try:
        await client.get_page(object_id)
    except NotionApiError as e:
        if e.status == 404:
            return ResourceKind.DATABASE
        raise
    return ResourceKind.PAGE


async def resolve_reference(
    client: NotionClient, text: str, kind: Optional[ResourceKind] = None
) -> ResourceRef:
    """Turn an ID, Notion URL or exact title into a ResourceRef."""
    value = text.strip()
    if is_notion_id(value) or is_notion_url(value):
        object_id = extract_id(value)
        if kind is None:
            kind = await detect_object_type(client, object_id)
        return ResourceRef(object_id, kind)
    return await resolve_by_name(client, value, kind)


async def resolve_data_source(client: NotionClient, ref: ResourceRef) -> tuple[str, str]:
    """Return (database_id, data_source_id) for a database reference.

    An ID that 404s as a database is retried as a data source ID, since
    search results and copied links sometimes carry the data source ID.
    """
    if ref.data_source_id:
        return ref.id, ref.data_source_id
    try:
        return ref.id, await client.get_database_data_source_id(ref.id)
    except NotionApiError as e:
        if e.status != 404:
            raise
    data_source = await client.get_data_source(ref.id)
    parent = data_source.get("parent") or {}
    return parent.get("database_id", ref.id), data_source.get("id", ref.id)


# =============================================================================
# Property Schema
# =============================================================================


class PropertyType(str, Enum):
    TITLE = "title"
    RICH_TEXT = "rich_text"
    NUMBER = "number"
    SELECT = "select"
    MULTI_SELECT = "multi_select"
    DATE = "date"
    CHECKBOX = "checkbox"
    URL = "url"
    EMAIL = "email"
    PHONE_NUMBER = "phone_number"
    STATUS = "status"
    PEOPLE = "people"
    RELATION = "relation"
    FILES = "files"
    FORMULA = "formula"
    ROLLUP = "rollup"
    CREATED_TIME = "created_time"
    LAST_EDITED_TIME = "last_edited_time"
    CREATED_BY = "created_by"
    LAST_EDITED_BY = "last_edited_by"
    UNIQUE_ID = "unique_id"
    VERIFICATION = "verification"
    BUTTON = "button"


# Computed by Notion; writes targeting these are dropped
READONLY_PROPERTY_TYPES = frozenset({
    PropertyType.FORMULA,
    PropertyType.ROLLUP,
    PropertyType.CREATED_TIME,
    PropertyType.LAST_EDITED_TIME,
    PropertyType.CREATED_BY,
    PropertyType.LAST_EDITED_BY,
    PropertyType.UNIQUE_ID,
    PropertyType.VERIFICATION,
    PropertyType.BUTTON,
})


@dataclass
class SchemaProperty:
    """One column of a data source schema."""
    name: str
    type: PropertyType
    id: str = ""

    @property
    def readonly(self) -> bool:
        return self.type in READONLY_PROPERTY_TYPES


def extract_schema(data_source: dict) -> list[SchemaProperty]:
    """Build the ordered schema from a data source object."""
    schema: list[SchemaProperty] = []
    for name, prop in (data_source.get("properties") or {}).items():
        try:
            prop_type = PropertyType(prop.get("type"))
        except ValueError:
            logger.debug(f"Skipping property {name!r} of unknown type {prop.get('type')!r}")
            continue
        schema.append(SchemaProperty(name, prop_type, prop.get("id", "")))
    return schema


def find_property(schema: list[SchemaProperty], name: str) -> Optional[SchemaProperty]:
    """Find a schema property by name.

    Exact match first, then case-insensitive with surrounding whitespace
    ignored (Notion property names may carry trailing spaces, e.g. "Paid on ").
    """
    for prop in schema:
        if prop.name == name:
            return prop
    wanted = name.strip().lower()
    for prop in schema:
        if prop.name.strip().lower() == wanted:
            return prop
    return None


# Schema used for pages whose parent is a page or the workspace
PAGE_SCHEMA = [SchemaProperty("title", PropertyType.TITLE)]


# =============================================================================
# Property Codec: Notion → Header Values
# =============================================================================


def _read_title(prop: dict) -> str:
    return _plain_text(prop.get("title"))


def _read_rich_text(prop: dict) -> Optional[str]:
    return _plain_text(prop.get("rich_text")) or None


def _read_scalar(prop: dict) -> Any:
    # number, checkbox, url, email, phone_number: False and 0 are real values
    return prop.get(prop.get("type", ""))


def _read_option(prop: dict) -> Optional[str]:
    option = prop.get(prop.get("type", ""))
    return option.get("name") if option else None


def _read_multi_select(prop: dict) -> Optional[list[str]]:
    names = [opt.get("name", "") for opt in prop.get("multi_select") or []]
    return names or None


def _read_date_value(date_obj: Optional[dict]) -> Any:
    if not date_obj or not date_obj.get("start"):
        return None
    if date_obj.get("end"):
        return {"start": date_obj["start"], "end": date_obj["end"]}
    return date_obj["start"]


def _read_date(prop: dict) -> Any:
    return _read_date_value(prop.get("date"))


def _user_label(user: Optional[dict]) -> Optional[str]:
    if not user:
        return None
    return user.get("name") or user.get("id")


def _read_people(prop: dict) -> Optional[list[str]]:
    people = [_user_label(p) for p in prop.get("people") or []]
    return [p for p in people if p] or None


def _read_relation(prop: dict) -> Optional[list[str]]:
    return [r["id"] for r in prop.get("relation") or [] if r.get("id")] or None


def _file_url(entry: dict) -> Optional[str]:
    for source in ("external", "file"):
        url = (entry.get(source) or {}).get("url")
        if url:
            return url
    return entry.get("name")


def _read_files(prop: dict) -> Optional[list[str]]:
    urls = [_file_url(f) for f in prop.get("files") or []]
    return [u for u in urls if u] or None


def _read_formula(prop: dict) -> Any:
    formula = prop.get("formula") or {}
    formula_type = formula.get("type", "")
    if formula_type == "date":
        date_obj = formula.get("date")
        return date_obj.get("start") if date_obj else None
    if formula_type in ("string", "number", "boolean"):
        return formula.get(formula_type)
    return None


def _read_rollup(prop: dict) -> Any:
    rollup = prop.get("rollup") or {}
    rollup_type = rollup.get("type", "")
    if rollup_type == "number":
        return rollup.get("number")
    if rollup_type == "date":
        date_obj = rollup.get("date")
        return date_obj.get("start") if date_obj else None
    if rollup_type == "array":
        items = [read_property_value(item) for item in rollup.get("array") or []]
        flat: list = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            elif item is not None:
                flat.append(item)
        return flat or None
    return None


def _read_timestamp(prop: dict) -> Optional[str]:
    return prop.get(prop.get("type", "")) or None


def _read_user(prop: dict) -> Optional[str]:
    return _user_label(prop.get(prop.get("type", "")))


def _read_unique_id(prop: dict) -> Any:
    uid = prop.get("unique_id") or {}
    number = uid.get("number")
    if number is None:
        return None
    prefix = uid.get("prefix")
    return f"{prefix}-{number}" if prefix else number


def _read_nothing(prop: dict) -> None:
    return None


_PROPERTY_READERS: dict[PropertyType, Callable[[dict], Any]] = {
    PropertyType.TITLE: _read_title,
    PropertyType.RICH_TEXT: _read_rich_text,
    PropertyType.NUMBER: _read_scalar,
    PropertyType.SELECT: _read_option,
    PropertyType.MULTI_SELECT: _read_multi_select,
    PropertyType.DATE: _read_date,
    PropertyType.CHECKBOX: _read_scalar,
    PropertyType.URL: _read_scalar,
    PropertyType.EMAIL: _read_scalar,
    PropertyType.PHONE_NUMBER: _read_scalar,
    PropertyType.STATUS: _read_option,
    PropertyType.PEOPLE: _read_people,
    PropertyType.RELATION: _read_relation,
    PropertyType.FILES: _read_files,
    PropertyType.FORMULA: _read_formula,
    PropertyType.ROLLUP: _read_rollup,
    PropertyType.CREATED_TIME: _read_timestamp,
    PropertyType.LAST_EDITED_TIME: _read_timestamp,
    PropertyType.CREATED_BY: _read_user,
    PropertyType.LAST_EDITED_BY: _read_user,
    PropertyType.UNIQUE_ID: _read_unique_id,
    PropertyType.VERIFICATION: _read_nothing,
    PropertyType.BUTTON: _read_nothing,
}


def read_property_value(prop: dict) -> Any:
    """Extract a plain YAML-friendly value from a Notion property value.

    Returns None when the property is empty; callers omit None from output.
    """
    try:
        prop_type = PropertyType(prop.get("type"))
    except ValueError:
        return None
    return _PROPERTY_READERS[prop_type](prop)


# =============================================================================
# Property Codec: Header Values → Notion
# =============================================================================

# Notion rejects rich text objects longer than this
MAX_RICH_TEXT_LENGTH = 2000


def _plain_rich_text(text: str) -> list[dict]:
    """Wrap plain text as rich text objects, split at MAX_RICH_TEXT_LENGTH."""
    return [
        {"type": "text", "text": {"content": text[i:i + MAX_RICH_TEXT_LENGTH]}}
        for i in range(0, len(text), MAX_RICH_TEXT_LENGTH)
    ]


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def coerce_number(value: Any) -> Any:
    """Parse a header value as a number.

    None/blank clears the property. Unparsable input becomes NaN and is passed
    on to Notion as-is.
    """
    if _is_blank(value):
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        logger.warning(f"Non-numeric value {text!r} for number property")
        return math.nan


def _write_title(value: Any) -> dict:
    return {"title": _plain_rich_text("" if value is None else str(value))}


def _write_rich_text(value: Any) -> dict:
    return {"rich_text": _plain_rich_text("" if value is None else str(value))}


def _write_number(value: Any) -> dict:
    return {"number": coerce_number(value)}


def _write_select(value: Any) -> dict:
    return {"select": None if _is_blank(value) else {"name": str(value)}}


def _write_status(value: Any) -> dict:
    return {"status": None if _is_blank(value) else {"name": str(value)}}


def _write_multi_select(value: Any) -> dict:
    return {"multi_select": [{"name": str(v)} for v in _as_list(value) if not _is_blank(v)]}


def _write_date(value: Any) -> dict:
    if _is_blank(value):
        return {"date": None}
    if isinstance(value, dict):
        if _is_blank(value.get("start")):
            return {"date": None}
        return {"date": {"start": _iso(value["start"]), "end": _iso(value.get("end"))}}
    return {"date": {"start": _iso(value)}}


def _write_checkbox(value: Any) -> dict:
    if isinstance(value, str):
        return {"checkbox": value.strip().lower() in ("true", "1", "yes", "x")}
    return {"checkbox": bool(value)}


def _write_text_field(prop_type: str) -> Callable[[Any], dict]:
    def write(value: Any) -> dict:
        return {prop_type: None if _is_blank(value) else str(value)}
    return write


def _write_people(value: Any) -> dict:
    return {"people": [{"id": str(v).strip()} for v in _as_list(value) if not _is_blank(v)]}


def _write_relation(value: Any) -> dict:
    return {"relation": [{"id": extract_id(str(v))} for v in _as_list(value) if not _is_blank(v)]}


def _write_files(value: Any) -> dict:
    urls = [str(v).strip() for v in _as_list(value) if not _is_blank(v)]
    return {"files": [{"name": u, "type": "external", "external": {"url": u}} for u in urls]}


_PROPERTY_WRITERS: dict[PropertyType, Callable[[Any], dict]] = {
    PropertyType.TITLE: _write_title,
    PropertyType.RICH_TEXT: _write_rich_text,
    PropertyType.NUMBER: _write_number,
    PropertyType.SELECT: _write_select,
    PropertyType.MULTI_SELECT: _write_multi_select,
    PropertyType.DATE: _write_date,
    PropertyType.CHECKBOX: _write_checkbox,
    PropertyType.URL: _write_text_field("url"),
    PropertyType.EMAIL: _write_text_field("email"),
    PropertyType.PHONE_NUMBER: _write_text_field("phone_number"),
    PropertyType.STATUS: _write_status,
    PropertyType.PEOPLE: _write_people,
    PropertyType.RELATION: _write_relation,
    PropertyType.FILES: _write_files,
}


def build_property_value(prop_type: PropertyType, value: Any) -> Optional[dict]:
    """Convert a header value to a Notion property value, None for read-only types."""
    writer = _PROPERTY_WRITERS.get(prop_type)
    return writer(value) if writer else None


def header_to_properties(header: "DocumentHeader", schema: list[SchemaProperty]) -> dict[str, dict]:
    """Translate header title + property map into Notion page properties.

    Keys not in the schema and read-only properties are dropped silently, so a
    document produced by a read can be written back unchanged.
    """
    result: dict[str, dict] = {}
    for key, value in (header.properties or {}).items():
        prop = find_property(schema, str(key))
        if prop is None or prop.readonly:
            continue
        result[prop.name] = build_property_value(prop.type, value)

    if header.title is not None:
        title_prop = next((p for p in schema if p.type is PropertyType.TITLE), None)
        result[title_prop.name if title_prop else "title"] = _write_title(header.title)
    return result


def build_page_properties(header: "DocumentHeader") -> dict[str, dict]:
    """Properties for a page under a plain page: only the title exists."""
    if header.title is None:
        return {}
    return {"title": _write_title(header.title)}


def build_icon(value: str) -> dict:
    # Icon: URL → external image, anything else → emoji
    if value.startswith("http"):
        return {"type": "external", "external": {"url": value}}
    return {"type": "emoji", "emoji": value}


def build_cover(url: str) -> dict:
    return {"type": "external", "external": {"url": url}}


def _read_icon(icon: Optional[dict]) -> Optional[str]:
    if not icon:
        return None
    icon_type = icon.get("type")
    if icon_type == "emoji":
        return icon.get("emoji")
    if icon_type in ("external", "file"):
        return (icon.get(icon_type) or {}).get("url")
    return None


def _read_cover(cover: Optional[dict]) -> Optional[str]:
    if not cover:
        return None
    return (cover.get(cover.get("type", "")) or {}).get("url")


# =============================================================================
# Inline Markdown ↔ Rich Text (Parsy-based)
# =============================================================================

import parsy as P

@dataclass
class RichTextSpan:
    """A span of rich text with formatting."""
    text: str
    bold: bool = False
    italic: bool = False
    strikethrough: bool = False
    code: bool = False
    link: Optional[str] = None
    equation: Optional[str] = None  # Set for inline $equation$ spans


def _apply_formatting(spans: list[RichTextSpan], **kwargs) -> list[RichTextSpan]:
    """Apply formatting attributes to spans (they're additive)."""
    for span in spans:
        for key, value in kwargs.items():
            setattr(span, key, value)
    return spans


def _merge_adjacent_spans(spans: list[RichTextSpan]) -> list[RichTextSpan]:
    """Merge adjacent spans with identical formatting."""
    if not spans:
        return []

    merged: list[RichTextSpan] = []
    for span in spans:
        if (merged and span.equation is None and
            merged[-1].equation is None and
            merged[-1].bold == span.bold and
            merged[-1].italic == span.italic and
            merged[-1].strikethrough == span.strikethrough and
            merged[-1].code == span.code and
            merged[-1].link == span.link):
            merged[-1].text += span.text
        else:
            merged.append(span)
    return merged


# Characters that start special syntax (used for literal text boundaries)
_SPECIAL_CHARS = set('\\*~`[$')

# Characters a backslash can escape
_ESCAPABLE_CHARS = '\\*~`[]()$#>|!-+._='


def _make_inline_parser():
    """Build the inline Markdown parser using parsy combinators.

    Returns a parser that converts text to list[RichTextSpan].

    Delimited formats capture their inner text with a regex that stops at the
    closing delimiter, then parse that text recursively.
    """

    def parse_inner(text: str) -> list[RichTextSpan]:
        if not text:
            return [RichTextSpan(text='')]
        try:
            return _inline_parser_impl.parse(text)
        except P.ParseError:
            return [RichTextSpan(text=text)]

    # Escape sequences: \* \~ \` \[ \$ \\ etc.
    escaped = (P.string('\\') >> P.char_from(_ESCAPABLE_CHARS)).map(
        lambda c: RichTextSpan(text=c)
    )

    # Equation: $expr$ with no inner edge spaces and no digit after the
    # closing $, so "$5 and $10" stays text
    equation = (
        P.string('$') >>
        P.regex(r'[^$\s](?:[^$]*[^$\s])?') <<
        P.string('$') <<
        P.regex(r'(?!\d)')
    ).map(lambda expr: RichTextSpan(text='', equation=expr))

    # Code: `text` (no nesting allowed)
    code = (
        P.string('`') >>
        P.regex(r'[^`]+') <<
        P.string('`')
    ).map(lambda t: RichTextSpan(text=t, code=True))

    # Bold: **content**; a single * right before the closing ** belongs to the
    # content, so ***both*** reads as bold(italic)
    bold = (
        P.string('**') >>
        P.regex(r'(?:[^*]|\*(?!\*)|\*(?=\*\*(?!\*)))+') <<
        P.string('**')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), bold=True))

    # Strikethrough: ~~content~~
    strikethrough = (
        P.string('~~') >>
        P.regex(r'(?:[^~]|~(?!~))+') <<
        P.string('~~')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), strikethrough=True))

    # Italic: *content*, content may not start or end with whitespace
    italic = (
        P.string('*') >>
        P.regex(r'[^*\s](?:[^*]*[^*\s])?') <<
        P.string('*')
    ).map(lambda inner: _apply_formatting(parse_inner(inner), italic=True))

    # Link: [text](url)
    @P.generate
    def link():
        yield P.string('[')
        text = yield P.regex(r'(?:[^\[\]]|\[(?:[^\[\]])*\])*')  # Balanced brackets
        yield P.string('](')
        url = yield P.regex(r'[^)\s]+')
        yield P.string(')')
        return _apply_formatting(parse_inner(text), link=url)

    def is_literal_char(c):
        return c not in _SPECIAL_CHARS

    # Run of literal characters (optimization: batch them)
    literal_run = P.test_char(is_literal_char, 'literal').at_least(1).map(
        lambda chars: RichTextSpan(text=''.join(chars))
    )

    # Special character that didn't match any pattern (fallback)
    special_fallback = P.any_char.map(lambda c: RichTextSpan(text=c))

    # Order matters: try formats first, then literal runs, then single special chars
    formatted_or_literal = (
        escaped |           # Escape sequences first
        equation |          # $...$
        code |              # `...`
        bold |              # **...**
        strikethrough |     # ~~...~~
        italic |            # *...*
        link |              # [...](...)
        literal_run |       # Batch of normal characters
        special_fallback    # Single special char that didn't start a pattern
    )

    def flatten(items):
        """Flatten nested lists of spans."""
        flat = []
        for item in items:
            if isinstance(item, list):
                flat.extend(item)
            else:
                flat.append(item)
        return flat

    _inline_parser_impl = formatted_or_literal.many().map(flatten)

    return _inline_parser_impl


# Build the parser once at module load
_inline_parser = _make_inline_parser()


def parse_inline_markdown(text: str) -> list[RichTextSpan]:
    """Parse inline Markdown (bold, italic, strike, code, links, $math$) into spans."""
    if not text:
        return []
    try:
        spans = _inline_parser.parse(text)
        return _merge_adjacent_spans(spans)
    except P.ParseError as e:
        # Graceful fallback: return whole text as plain span
        logger.warning(f"Inline formatting parse error: {e}")
        return [RichTextSpan(text=text)]


def rich_text_spans_to_notion(spans: list[RichTextSpan]) -> list[dict]:
    """Convert RichTextSpan list to Notion API rich_text format."""
    result = []
    for span in spans:
        if span.equation is not None:
            result.append({"type": "equation", "equation": {"expression": span.equation}})
            continue

        annotations = {}
        if span.bold:
            annotations["bold"] = True
        if span.italic:
            annotations["italic"] = True
        if span.strikethrough:
            annotations["strikethrough"] = True
        if span.code:
            annotations["code"] = True

        for obj in _plain_rich_text(span.text):
            if span.link:
                obj["text"]["link"] = {"url": span.link}
            if annotations:
                obj["annotations"] = dict(annotations)
            result.append(obj)

    return result


def markdown_to_rich_text(text: str) -> list[dict]:
    """Convert inline Markdown to a Notion rich_text array."""
    return rich_text_spans_to_notion(parse_inline_markdown(text))


def _notion_rich_text_to_spans(rich_text: list[dict]) -> list[RichTextSpan]:
    # Underline and color have no Markdown form and are dropped
    spans = []
    for item in rich_text or []:
        item_type = item.get("type", "text")
        if item_type == "equation":
            expression = (item.get("equation") or {}).get("expression", "")
            spans.append(RichTextSpan(text='', equation=expression))
            continue

        if item_type == "text":
            text_obj = item.get("text") or {}
            content = text_obj.get("content", item.get("plain_text", ""))
            link = (text_obj.get("link") or {}).get("url")
        else:
            # Mentions render as their display text, linked when Notion gives an href
            content = item.get("plain_text", "")
            link = item.get("href")

        annotations = item.get("annotations") or {}
        spans.append(RichTextSpan(
            text=content,
            bold=bool(annotations.get("bold")),
            italic=bool(annotations.get("italic")),
            strikethrough=bool(annotations.get("strikethrough")),
            code=bool(annotations.get("code")),
            link=link,
        ))
    return _merge_adjacent_spans(spans)


_MARKDOWN_SPECIAL_PATTERN = re.compile(r'([\\*`~\[$])')


def _escape_markdown(text: str) -> str:
    return _MARKDOWN_SPECIAL_PATTERN.sub(r'\\\1', text)


def _render_span(span: RichTextSpan) -> str:
    if span.equation is not None:
        return f"${span.equation}$"

    text = span.text if span.code else _escape_markdown(span.text)
    core = text.strip()
    if core and (span.code or span.bold or span.italic or span.strikethrough):
        # Markers hug the text; surrounding whitespace stays outside
        leading = text[:len(text) - len(text.lstrip())]
        trailing = text[len(text.rstrip()):]
        if span.code:
            core = f"`{core}`"
        else:
            if span.italic:
                core = f"*{core}*"
            if span.bold:
                core = f"**{core}**"
            if span.strikethrough:
                core = f"~~{core}~~"
        text = f"{leading}{core}{trailing}"

    if span.link:
        text = f"[{text}]({span.link})"
    return text


def rich_text_to_markdown(rich_text: list[dict]) -> str:
    """Convert a Notion rich_text array to inline Markdown."""
    return "".join(_render_span(span) for span in _notion_rich_text_to_spans(rich_text))


# =============================================================================
# Markdown Body → Notion Blocks
# =============================================================================

# Notion's code block languages
NOTION_CODE_LANGUAGES = frozenset({
    "abap", "agda", "arduino", "ascii art", "assembly", "bash", "basic", "bnf",
    "c", "c#", "c++", "clojure", "coffeescript", "coq", "css", "dart", "dhall",
    "diff", "docker", "ebnf", "elixir", "elm", "erlang", "f#", "flow", "fortran",
    "gherkin", "glsl", "go", "graphql", "groovy", "haskell", "hcl", "html",
    "idris", "java", "javascript", "json", "julia", "kotlin", "latex", "less",
    "lisp", "livescript", "llvm ir", "lua", "makefile", "markdown", "markup",
    "matlab", "mathematica", "mermaid", "nix", "notion formula", "objective-c",
    "ocaml", "pascal", "perl", "php", "plain text", "powershell", "prolog",
    "protobuf", "purescript", "python", "r", "racket", "reason", "ruby", "rust",
    "sass", "scala", "scheme", "scss", "shell", "smalltalk", "solidity", "sql",
    "swift", "toml", "typescript", "vb.net", "verilog", "vhdl", "visual basic",
    "webassembly", "xml", "yaml", "java/c/c++/c#",
})

CODE_LANGUAGE_ALIASES = {
    "py": "python",
    "python3": "python",
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "sh": "shell",
    "zsh": "shell",
    "console": "shell",
    "yml": "yaml",
    "md": "markdown",
    "rb": "ruby",
    "rs": "rust",
    "golang": "go",
    "cpp": "c++",
    "cs": "c#",
    "csharp": "c#",
    "fsharp": "f#",
    "kt": "kotlin",
    "dockerfile": "docker",
    "objc": "objective-c",
    "ps1": "powershell",
    "tex": "latex",
    "hs": "haskell",
    "proto": "protobuf",
    "text": "plain text",
    "txt": "plain text",
    "plaintext": "plain text",
}


def normalize_code_language(tag: Optional[str]) -> str:
    """Map a fence info string to a Notion code language, "plain text" if unknown."""
    if not tag:
        return "plain text"
    language = tag.strip().lower()
    language = CODE_LANGUAGE_ALIASES.get(language, language)
    return language if language in NOTION_CODE_LANGUAGES else "plain text"


@dataclass
class MarkdownBlock:
    """Parsed body block, before nesting."""
    block_type: str  # paragraph, heading_1, bulleted_list_item, code, table, ...
    content: str = ""
    level: int = 0  # Nesting level (0 = root)
    checked: bool = False  # For to_do blocks
    language: Optional[str] = None  # For code blocks
    url: Optional[str] = None  # For image blocks
    rows: list[list[str]] = field(default_factory=list)  # For tables, header row first


# Block markers, matched against a line with its indentation removed
HEADING_PATTERN = re.compile(r'^(#{1,6})\s+(.*)$')
TODO_PATTERN = re.compile(r'^[-*+]\s+\[([ xX])\](?:\s+(.*))?$')
BULLET_PATTERN = re.compile(r'^[-*+](?:\s+(.*))?$')
NUMBERED_PATTERN = re.compile(r'^\d+[.)](?:\s+(.*))?$')
QUOTE_PATTERN = re.compile(r'^>\s?(.*)$')
IMAGE_PATTERN = re.compile(r'^!\[([^\]]*)\]\(([^)\s]+)\)$')
THEMATIC_BREAK_PATTERN = re.compile(r'^(?:(?:-\s*){3,}|(?:\*\s*){3,}|(?:_\s*){3,})$')
FENCE_PATTERN = re.compile(r'^(`{3,}|~{3,})\s*([^`]*)$')
TABLE_ROW_PATTERN = re.compile(r'^\|.*\|$')
TABLE_SEPARATOR_PATTERN = re.compile(r'^\|?\s*:?-+:?\s*(?:\|\s*:?-+:?\s*)*\|?$')
UNSUPPORTED_PATTERN = re.compile(r'^\[Unsupported: [^\]]+\]$')

# Block types that can have children
PARENT_BLOCK_TYPES = {
    'paragraph', 'bulleted_list_item', 'numbered_list_item', 'to_do',
    'toggle', 'quote', 'callout',
}

# Notion accepts two levels of nested children in a single request
MAX_NESTING_DEPTH = 2

# Items whose text may continue on the next line after a trailing backslash
LIST_ITEM_BLOCK_TYPES = {'bulleted_list_item', 'numbered_list_item', 'to_do'}


def _ends_with_hard_break(text: str) -> bool:
    """True if text ends in an odd number of backslashes (an even run is escaped)."""
    return (len(text) - len(text.rstrip('\\'))) % 2 == 1


def calculate_indent_level(line: str) -> tuple[int, str]:
    """Calculate indentation level and extract content.

    Two spaces (or one tab) per level.

    Returns:
        Tuple of (indent_level, content_without_indent)
    """
    expanded = line.replace('\t', '  ')
    stripped = expanded.lstrip(' ')
    spaces = len(expanded) - len(stripped)
    return spaces // 2, stripped


def _split_table_row(line: str) -> list[str]:
    inner = line.strip()
    if inner.startswith('|'):
        inner = inner[1:]
    if inner.endswith('|') and not inner.endswith('\\|'):
        inner = inner[:-1]
    return [cell.strip().replace('\\|', '|') for cell in re.split(r'(?<!\\)\|', inner)]


def parse_markdown_blocks(body: str) -> list[MarkdownBlock]:
    """Parse a Markdown body into a flat list of blocks with nesting levels.

    Thematic breaks are dropped and [Unsupported: ...] placeholders from a
    previous read are skipped.
    """
    lines = body.replace('\r\n', '\n').split('\n')
    blocks: list[MarkdownBlock] = []
    paragraph: Optional[MarkdownBlock] = None
    quote: Optional[MarkdownBlock] = None
    i = 0

    while i < len(lines):
        level, text = calculate_indent_level(lines[i])
        text = text.rstrip()
        i += 1

        if not text:
            paragraph = quote = None
            continue

        # Fenced code: everything up to the matching closing fence is literal
        fence = FENCE_PATTERN.match(text)
        if fence:
            paragraph = quote = None
            marker = fence.group(1)
            code_lines = []
            while i < len(lines):
                candidate = lines[i].strip()
                i += 1
                if candidate.startswith(marker[0] * len(marker)) and not candidate.strip(marker[0]):
                    break
                code_lines.append(_strip_indent(lines[i - 1], level))
            blocks.append(MarkdownBlock(
                'code', '\n'.join(code_lines), level, language=normalize_code_language(fence.group(2))
            ))
            continue

        # Block equation: $$ ... $$ (single line or fenced)
        if text.startswith('$$'):
            paragraph = quote = None
            if len(text) > 4 and text.endswith('$$'):
                blocks.append(MarkdownBlock('equation', text[2:-2].strip(), level))
                continue
            expression = [text[2:].strip()] if text[2:].strip() else []
            while i < len(lines):
                candidate = lines[i].strip()
                i += 1
                if candidate.endswith('$$'):
                    if candidate[:-2].strip():
                        expression.append(candidate[:-2].strip())
                    break
                expression.append(candidate)
            blocks.append(MarkdownBlock('equation', '\n'.join(expression), level))
            continue

        # Table: header row followed by a separator row
        if TABLE_ROW_PATTERN.match(text) and i < len(lines) and TABLE_SEPARATOR_PATTERN.match(lines[i].strip()):
            paragraph = quote = None
            header = _split_table_row(text)
            rows = [header]
            i += 1
            while i < len(lines) and TABLE_ROW_PATTERN.match(lines[i].strip()):
                cells = _split_table_row(lines[i])
                rows.append((cells + [''] * len(header))[:len(header)])
                i += 1
            blocks.append(MarkdownBlock('table', '', level, rows=rows))
            continue

        if UNSUPPORTED_PATTERN.match(text) or THEMATIC_BREAK_PATTERN.match(text):
            paragraph = quote = None
            continue

        match = QUOTE_PATTERN.match(text)
        if match:
            paragraph = None
            if quote is not None and quote.level == level:
                quote.content += '\n' + match.group(1)
            else:
                quote = MarkdownBlock('quote', match.group(1), level)
                blocks.append(quote)
            continue
        quote = None

        block = _match_line_block(text, level)
        if block is not None:
            paragraph = None
            if block.block_type in LIST_ITEM_BLOCK_TYPES:
                while _ends_with_hard_break(block.content) and i < len(lines):
                    block.content = block.content[:-1] + '\n' + lines[i].strip()
                    i += 1
            blocks.append(block)
            continue

        # Plain text: consecutive lines form one paragraph
        if paragraph is not None:
            paragraph.content += '\n' + text
        else:
            paragraph = MarkdownBlock('paragraph', text, level)
            blocks.append(paragraph)

    return blocks


def _strip_indent(line: str, level: int) -> str:
    expanded = line.replace('\t', '  ').rstrip()
    indent = level * 2
    if expanded[:indent].strip() == '':
        return expanded[indent:]
    return expanded.lstrip()


def _match_line_block(text: str, level: int) -> Optional[MarkdownBlock]:
    """Match single-line block markers: headings, list items, to-dos, images."""
    match = HEADING_PATTERN.match(text)
    if match:
        # h4-h6 fold into Notion's smallest heading
        depth = min(len(match.group(1)), 3)
        return MarkdownBlock(f'heading_{depth}', match.group(2).strip(), level)

    match = TODO_PATTERN.match(text)
    if match:
        return MarkdownBlock('to_do', match.group(2) or '', level, checked=match.group(1) != ' ')

    match = BULLET_PATTERN.match(text)
    if match:
        return MarkdownBlock('bulleted_list_item', match.group(1) or '', level)

    match = NUMBERED_PATTERN.match(text)
    if match:
        return MarkdownBlock('numbered_list_item', match.group(1) or '', level)

    match = IMAGE_PATTERN.match(text)
    if match:
        return MarkdownBlock('image', match.group(1), level, url=match.group(2))

    return None


def markdown_block_to_notion(block: MarkdownBlock) -> dict:
    """Convert a MarkdownBlock to Notion API block format."""
    block_type = block.block_type

    if block_type in ('heading_1', 'heading_2', 'heading_3'):
        return {
            "type": block_type,
            block_type: {"rich_text": markdown_to_rich_text(block.content)}
        }

    elif block_type in ('paragraph', 'bulleted_list_item', 'numbered_list_item', 'quote'):
        return {
            "type": block_type,
            block_type: {"rich_text": markdown_to_rich_text(block.content)}
        }

    elif block_type == 'to_do':
        return {
            "type": "to_do",
            "to_do": {
                "rich_text": markdown_to_rich_text(block.content),
                "checked": block.checked
            }
        }

    elif block_type == 'code':
        return {
            "type": "code",
            "code": {
                "rich_text": _plain_rich_text(block.content),
                "language": block.language or "plain text"
            }
        }

    elif block_type == 'equation':
        return {"type": "equation", "equation": {"expression": block.content}}

    elif block_type == 'image':
        image: dict = {"type": "external", "external": {"url": block.url}}
        if block.content:
            image["caption"] = markdown_to_rich_text(block.content)
        return {"type": "image", "image": image}

    elif block_type == 'table':
        width = len(block.rows[0]) if block.rows else 1
        return {
            "type": "table",
            "table": {
                "table_width": width,
                "has_column_header": True,
                "has_row_header": False,
                "children": [
                    {
                        "type": "table_row",
                        "table_row": {"cells": [markdown_to_rich_text(cell) for cell in row]}
                    }
                    for row in block.rows
                ],
            }
        }

    else:
        # Fallback: treat as paragraph
        return {
            "type": "paragraph",
            "paragraph": {"rich_text": markdown_to_rich_text(block.content)}
        }


def build_block_tree(blocks: list[MarkdownBlock]) -> list[dict]:
    """Build nested Notion block structure from flat MarkdownBlock list.

    Handles indentation levels to create parent-child relationships, clamped
    to MAX_NESTING_DEPTH.

    Args:
        blocks: Flat list of MarkdownBlocks with level attributes.

    Returns:
        List of Notion blocks with children nested.
    """
    if not blocks:
        return []

    # Build tree using a stack to track parent at each level
    result: list[dict] = []
    stack: list[tuple[int, dict]] = []  # (level, notion_block)

    for block in blocks:
        notion_block = markdown_block_to_notion(block)
        level = block.level

        # Pop stack until we find parent level
        while stack and (stack[-1][0] >= level or len(stack) > MAX_NESTING_DEPTH):
            stack.pop()

        if stack:
            # Add as child of top of stack
            parent = stack[-1][1]
            parent_type = parent["type"]
            parent[parent_type].setdefault("children", []).append(notion_block)
        else:
            # Top-level block
            result.append(notion_block)

        # Push to stack if this block type can have children
        if block.block_type in PARENT_BLOCK_TYPES:
            stack.append((level, notion_block))

    return result


def markdown_to_blocks(body: str) -> list[dict]:
    """Convert a Markdown body to Notion blocks ready for create/append."""
    return build_block_tree(parse_markdown_blocks(body))


# =============================================================================
# Notion Blocks → Markdown Body
# =============================================================================

# Blocks with nothing worth rendering
SILENT_BLOCK_TYPES = {"child_page", "table_of_contents", "breadcrumb"}

# Containers whose children render in place
TRANSPARENT_BLOCK_TYPES = {"column_list", "column", "synced_block"}

LIST_BLOCK_TYPES = {"bulleted_list_item", "numbered_list_item", "to_do", "toggle"}

MEDIA_BLOCK_TYPES = {"video", "file", "pdf", "audio"}
LINK_BLOCK_TYPES = {"bookmark", "embed", "link_preview"}

_BLOCK_START_PATTERN = re.compile(r'^(#{1,6}\s|[-+]\s|[-+]$|(?:[-_]\s*){3,}$|={3,}\s*$|>|`{3}|~{3}|\$\$|\||!\[)')
_NUMBERED_START_PATTERN = re.compile(r'^(\d+)([.)])')


def _escape_block_start(text: str) -> str:
    """Escape a leading marker so paragraph text doesn't re-parse as another block."""
    if _NUMBERED_START_PATTERN.match(text):
        return _NUMBERED_START_PATTERN.sub(r'\1\\\2', text, count=1)
    if _BLOCK_START_PATTERN.match(text):
        return '\\' + text
    return text


def _indent_lines(text: str, prefix: str) -> str:
    return '\n'.join(prefix + line if line else line for line in text.split('\n'))


def _block_url(data: dict) -> str:
    return (
        (data.get("external") or {}).get("url")
        or (data.get("file") or {}).get("url")
        or data.get("url")
        or ""
    )


def _escape_cell(value: str) -> str:
    return value.replace('|', '\\|').replace('\n', ' ')


def _render_table(block: dict) -> str:
    rows = [
        [_escape_cell(rich_text_to_markdown(cell)) for cell in (row.get("table_row") or {}).get("cells", [])]
        for row in block.get("_children", [])
        if row.get("type") == "table_row"
    ]
    if not rows:
        return ""
    width = max(len(row) for row in rows)
    rows = [row + [''] * (width - len(row)) for row in rows]
    lines = ["| " + " | ".join(rows[0]) + " |", "| " + " | ".join(["---"] * width) + " |"]
    lines.extend("| " + " | ".join(row) + " |" for row in rows[1:])
    return "\n".join(lines)


def render_block(block: dict, number: int = 1) -> str:
    """Render one block (and its children) to Markdown.

    Args:
        block: Notion block, with nested children under "_children".
        number: Position for numbered list items.

    Returns:
        Markdown text, or "" for blocks with no textual form.
    """
    block_type = block.get("type", "")
    data = block.get(block_type) or {}
    children = block.get("_children") or []
    text = rich_text_to_markdown(data.get("rich_text", []))

    if block_type in SILENT_BLOCK_TYPES:
        return ""

    if block_type in TRANSPARENT_BLOCK_TYPES:
        return render_blocks(children)

    if block_type == "paragraph":
        result = "\n".join(_escape_block_start(line) for line in text.split("\n"))
        if children:
            result += "\n\n" + _indent_lines(render_blocks(children), "  ")
        return result

    if block_type in ("heading_1", "heading_2", "heading_3"):
        result = "#" * int(block_type[-1]) + " " + text
        if children:
            # Toggleable heading: children follow as ordinary content
            result += "\n\n" + render_blocks(children)
        return result

    if block_type in LIST_BLOCK_TYPES:
        if block_type == "numbered_list_item":
            marker, indent = f"{number}.", "   "
        elif block_type == "to_do":
            marker, indent = f"- [{'x' if data.get('checked') else ' '}]", "  "
        else:
            marker, indent = "-", "  "
        text = text.rstrip()
        if "\n" in text:
            # Backslash hard breaks keep later lines inside the item
            head, *tail = text.split("\n")
            text = "\\\n".join([head] + [indent + _escape_block_start(line) for line in tail])
        result = f"{marker} {text}" if text else marker
        if children:
            result += "\n" + _indent_lines(render_blocks(children), indent)
        return result

    if block_type in ("quote", "callout"):
        if block_type == "callout":
            icon = _read_icon(data.get("icon"))
            if icon and not icon.startswith("http"):
                text = f"{icon} {text}"
        body = text
        if children:
            body += "\n\n" + render_blocks(children)
        return "\n".join(f"> {line}" if line else ">" for line in body.split("\n"))

    if block_type == "code":
        language = data.get("language", "plain text")
        tag = "" if language == "plain text" else language
        code = "".join(t.get("plain_text", t.get("text", {}).get("content", "")) for t in data.get("rich_text", []))
        return f"```{tag}\n{code}\n```"

    if block_type == "equation":
        return f"$$\n{data.get('expression', '')}\n$$"

    if block_type == "divider":
        return "---"

    if block_type == "table":
        return _render_table(block)

    if block_type == "image":
        caption = rich_text_to_markdown(data.get("caption", []))
        return f"![{caption}]({_block_url(data)})"

    if block_type in MEDIA_BLOCK_TYPES or block_type in LINK_BLOCK_TYPES:
        url = _block_url(data)
        label = rich_text_to_markdown(data.get("caption", [])) or data.get("name") or url
        return f"[{label}]({url})"

    if block_type == "link_to_page":
        target = data.get(data.get("type", "page_id"), "")
        url = f"https://www.notion.so/{target.replace('-', '')}"
        return f"[{url}]({url})"

    # child_database, unsupported and anything newer than this converter
    return f"[Unsupported: {block_type}]"


def render_blocks(blocks: list[dict]) -> str:
    """Render a block list, blank lines between blocks and single newlines in lists."""
    parts: list[str] = []
    previous_type = None
    number = 0
    for block in blocks:
        block_type = block.get("type", "")
        number = number + 1 if block_type == "numbered_list_item" and previous_type == block_type else 1
        rendered = render_block(block, number)
        if not rendered:
            continue
        if parts:
            tight = block_type in LIST_BLOCK_TYPES and previous_type in LIST_BLOCK_TYPES
            parts.append("\n" if tight else "\n\n")
        parts.append(rendered)
        previous_type = block_type
    return "".join(parts)


def blocks_to_markdown(blocks: list[dict]) -> str:
    """Convert a fetched block tree to a Markdown body."""
    return render_blocks(blocks).strip()


# =============================================================================
# Document Codec (Front Matter + Body)
# =============================================================================

# Separates documents in a batch (a line containing only ===)
BATCH_DELIMITER = "==="

# Front matter keys in serialization order
HEADER_FIELDS = (
    "id", "url", "title", "icon", "cover", "parent", "database",
    "properties", "created", "last_edited",
)

# Header fields that are always strings, even when YAML reads them as numbers
_TEXT_HEADER_FIELDS = ("id", "url", "title", "icon", "cover", "parent", "database", "created", "last_edited")


@dataclass
class DocumentHeader:
    """Front matter of a document.

    url, created and last_edited are filled in by reads and ignored by writes.
    Unrecognized keys are kept in extra and never interpreted.
    """
    id: Optional[str] = None
    url: Optional[str] = None
    title: Optional[str] = None
    icon: Optional[str] = None
    cover: Optional[str] = None
    parent: Optional[str] = None
    database: Optional[str] = None
    properties: Optional[dict[str, Any]] = None
    created: Optional[str] = None
    last_edited: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: dict) -> "DocumentHeader":
        header = cls()
        for key, value in data.items():
            if key in _TEXT_HEADER_FIELDS:
                setattr(header, key, None if value is None else str(value))
            elif key == "properties":
                header.properties = value if isinstance(value, dict) else None
            else:
                header.extra[key] = value
        return header

    def to_mapping(self) -> dict[str, Any]:
        """Ordered mapping with every None field left out."""
        data = {key: getattr(self, key) for key in HEADER_FIELDS if getattr(self, key) is not None}
        data.update({k: v for k, v in self.extra.items() if v is not None})
        return data


@dataclass
class Document:
    header: DocumentHeader
    body: str = ""


def _normalize_yaml_value(value: Any) -> Any:
    """Turn YAML dates/datetimes back into the ISO strings Notion uses."""
    if isinstance(value, dict):
        return {str(k): _normalize_yaml_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize_yaml_value(item) for item in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def parse_document(text: str) -> Document:
    """Split a document into its front matter header and Markdown body.

    Raises:
        NotionMcpError: INVALID_FRONTMATTER if the header is not valid YAML.
    """
    try:
        post = frontmatter.loads(text)
    except yaml.YAMLError as exc:
        raise NotionMcpError(
            f"Front matter contains invalid YAML: {exc}", "INVALID_FRONTMATTER", hint=HINTS["frontmatter"]
        ) from exc

    metadata = _normalize_yaml_value(dict(post.metadata or {}))
    content = post.content if post.content is not None else ""
    return Document(DocumentHeader.from_mapping(metadata), content)


def render_document(header: DocumentHeader, body: str) -> str:
    """Serialize header + body, body trimmed and newline-terminated."""
    post = frontmatter.Post(body.strip())
    post.metadata.update(header.to_mapping())
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def split_batch(text: str) -> list[str]:
    """Split a batch on === lines outside fenced code; empty documents are dropped."""
    documents: list[str] = []
    current: list[str] = []
    fence: Optional[str] = None

    for line in text.replace('\r\n', '\n').split('\n'):
        stripped = line.strip()
        match = FENCE_PATTERN.match(stripped)
        if match:
            marker = match.group(1)
            if fence is None:
                fence = marker
            elif stripped.startswith(fence) and not stripped.strip(fence[0]):
                fence = None
        elif fence is None and stripped == BATCH_DELIMITER:
            documents.append('\n'.join(current))
            current = []
            continue
        current.append(line)

    documents.append('\n'.join(current))
    return [doc.strip() for doc in documents if doc.strip()]


def page_to_header(page: dict) -> DocumentHeader:
    """Build a document header from a Notion page object."""
    title = ""
    properties: dict[str, Any] = {}
    for name, prop in (page.get("properties") or {}).items():
        if prop.get("type") == "title":
            title = _plain_text(prop.get("title"))
            continue
        value = read_property_value(prop)
        if value is not None:
            properties[name] = value

    header = DocumentHeader(
        id=page.get("id"),
        url=page.get("url"),
        title=title,
        icon=_read_icon(page.get("icon")),
        cover=_read_cover(page.get("cover")),
        properties=properties or None,
        created=page.get("created_time"),
        last_edited=page.get("last_edited_time"),
    )

    parent = page.get("parent") or {}
    parent_type = parent.get("type")
    if parent_type in ("database_id", "data_source_id"):
        header.database = parent.get("database_id") or parent.get("data_source_id")
    elif parent_type in ("page_id", "block_id"):
        header.parent = parent.get(parent_type)
    elif parent_type == "workspace":
        header.parent = "workspace"
    return header


async def page_to_markdown(client: NotionClient, page: dict) -> str:
    """Fetch a page's content and render it as a full document."""
    blocks = await client.fetch_block_tree(page["id"])
    return render_document(page_to_header(page), blocks_to_markdown(blocks))


# =============================================================================
# Query Expression Parser (Filter + Sort)
# =============================================================================

# Leaf patterns in priority order; not-equals must precede equals, or
# "Status is not Done" would read as Status = "not Done"
_FILTER_PATTERNS = [
    ("does_not_equal", re.compile(r'^(.+?)\s+(?:!=|is not|does not equal)\s+(.+)$', re.IGNORECASE)),
    ("equals", re.compile(r'^(.+?)\s+(?:is|=|equals)\s+(.+)$', re.IGNORECASE)),
    ("contains", re.compile(r'^(.+?)\s+contains\s+(.+)$', re.IGNORECASE)),
    ("greater_than_or_equal_to", re.compile(r'^(.+?)\s+>=\s+(.+)$', re.IGNORECASE)),
    ("less_than_or_equal_to", re.compile(r'^(.+?)\s+<=\s+(.+)$', re.IGNORECASE)),
    ("greater_than", re.compile(r'^(.+?)\s+(?:>|greater than)\s+(.+)$', re.IGNORECASE)),
    ("less_than", re.compile(r'^(.+?)\s+(?:<|less than)\s+(.+)$', re.IGNORECASE)),
    ("after", re.compile(r'^(.+?)\s+after\s+(.+)$', re.IGNORECASE)),
    ("before", re.compile(r'^(.+?)\s+before\s+(.+)$', re.IGNORECASE)),
]

_AND_PATTERN = re.compile(r'\s+AND\s+', re.IGNORECASE)
_SORT_PATTERN = re.compile(r'^(.+?)\s+(asc(?:ending)?|desc(?:ending)?)$', re.IGNORECASE)


def _parse_filter_number(value: str) -> Optional[float]:
    """Parse a numeric literal, None if it isn't a finite number."""
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number) if number.is_integer() else number


def _truthy_word(value: str) -> bool:
    return value.strip().lower() in ("true", "yes")


def _build_leaf(operator: str, prop: SchemaProperty, value: str) -> Optional[dict]:
    """Build one filter condition, None when the value doesn't fit the operator."""
    name, prop_type = prop.name, prop.type.value

    if operator in ("equals", "does_not_equal"):
        if prop.type is PropertyType.MULTI_SELECT:
            # multi_select has no single-value equality
            op = "contains" if operator == "equals" else "does_not_contain"
            return {"property": name, "multi_select": {op: value}}
        if prop.type is PropertyType.CHECKBOX:
            return {"property": name, "checkbox": {operator: _truthy_word(value)}}
        if prop.type is PropertyType.NUMBER:
            number = _parse_filter_number(value)
            return None if number is None else {"property": name, "number": {operator: number}}
        return {"property": name, prop_type: {operator: value}}

    if operator == "contains":
        return {"property": name, prop_type: {"contains": value}}

    if operator in ("after", "before"):
        return {"property": name, "date": {operator: value}}

    number = _parse_filter_number(value)
    if number is None:
        return None
    return {"property": name, prop_type: {operator: number}}


def _parse_filter_leaf(expr: str, schema: list[SchemaProperty]) -> Optional[dict]:
    for operator, pattern in _FILTER_PATTERNS:
        match = pattern.match(expr)
        if not match:
            continue
        prop = find_property(schema, match.group(1))
        if prop is None:
            continue
        return _build_leaf(operator, prop, match.group(2).strip())
    return None


def build_filter(expr: Optional[str], schema: list[SchemaProperty]) -> Optional[dict]:
    """Parse "Status is Done AND Priority > 3" into a Notion filter.

    Conjuncts that name unknown properties or carry unusable values are
    dropped. Returns None when nothing usable remains (no filter applied).
    """
    if not expr or not expr.strip():
        return None
    leaves = []
    for part in _AND_PATTERN.split(expr.strip()):
        leaf = _parse_filter_leaf(part.strip(), schema)
        if leaf is not None:
            leaves.append(leaf)
        else:
            logger.debug(f"Dropping filter condition {part!r}")

    if not leaves:
        return None
    if len(leaves) == 1:
        return leaves[0]
    return {"and": leaves}


def build_sorts(expr: Optional[str], schema: list[SchemaProperty]) -> Optional[list[dict]]:
    """Parse "Due Date asc, Priority descending" into Notion sorts, None if empty."""
    if not expr or not expr.strip():
        return None
    sorts = []
    for part in expr.split(","):
        match = _SORT_PATTERN.match(part.strip())
        if not match:
            continue
        prop = find_property(schema, match.group(1))
        if prop is None:
            continue
        direction = "ascending" if match.group(2).lower().startswith("asc") else "descending"
        sorts.append({"property": prop.name, "direction": direction})
    return sorts or None


# =============================================================================
# Operation Orchestrator
# =============================================================================

WRITE_MODES = ("create", "update", "auto")
SEARCH_FILTERS = {"all": None, "page": ResourceKind.PAGE, "database": ResourceKind.DATABASE}
SCHEMA_ACTIONS = ("list", "add", "remove", "rename")

MAX_READ_DEPTH = 3
MAX_LIST_LIMIT = 200

# Columns left out of list tables
LIST_HIDDEN_TYPES = {
    PropertyType.FORMULA, PropertyType.ROLLUP, PropertyType.CREATED_BY,
    PropertyType.LAST_EDITED_BY, PropertyType.BUTTON, PropertyType.VERIFICATION,
}
LIST_MAX_COLUMNS = 8

# Property types notion_schema can add
ADDABLE_PROPERTY_TYPES = (
    "title", "rich_text", "number", "select", "multi_select", "date",
    "checkbox", "url", "email", "phone_number", "status", "people", "files",
    "relation",
)

DEFAULT_PAGE_ICON = "📝"
DEFAULT_DATABASE_ICON = "🗂️"


@dataclass
class ToolResult:
    """Text returned to the agent; is_error marks failed operations."""
    text: str
    is_error: bool = False


def format_cell_value(prop: dict) -> str:
    """Render a property value for a Markdown table cell."""
    value = read_property_value(prop)
    if prop.get("type") in ("created_time", "last_edited_time") and value:
        value = value[:10]
    if value is None or value == "" or value == []:
        return "-"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return f"{value['start']} → {value['end']}"
    return str(value)


def _property_details(config: dict) -> str:
    prop_type = config.get("type", "")
    data = config.get(prop_type) or {}
    if prop_type in ("select", "multi_select"):
        return ", ".join(o.get("name", "") for o in data.get("options", [])) or "-"
    if prop_type == "status":
        return ", ".join(g.get("name", "") for g in data.get("groups", [])) or "-"
    if prop_type == "number" and data.get("format"):
        return str(data["format"])
    return "-"


def _property_config(prop_type: str, options: Optional[list[str]]) -> dict:
    if prop_type in ("select", "multi_select"):
        return {"type": prop_type, prop_type: {"options": [{"name": o} for o in options or []]}}
    if prop_type == "number":
        return {"type": "number", "number": {"format": "number"}}
    return {"type": prop_type, prop_type: {}}


class Orchestrator:
    """Runs the tool operations against an injected NotionClient.

    Every public method returns a ToolResult and never raises: failures come
    back as formatted error text with is_error set.
    """

    def __init__(self, client: NotionClient):
        self.client = client

    def _failure(self, operation: str, exc: Exception) -> ToolResult:
        if isinstance(exc, (NotionMcpError, NotionApiError, httpx.HTTPError)):
            logger.warning(f"{operation} failed: {type(exc).__name__}: {exc}")
        else:
            logger.exception(f"{operation} failed unexpectedly")
        return ToolResult(format_error(exc), is_error=True)

    async def _fetch_page(self, page_id: str, origin: str) -> dict:
        """Fetch a page, turning a 404 into NotFound naming what the caller passed."""
        try:
            return await self.client.get_page(page_id)
        except NotionApiError as e:
            if e.status == 404:
                raise NotFoundError(
                    f'Page "{origin}" not found or not shared with the integration.'
                ) from e
            raise

    async def _schema_for_parent(self, parent: dict) -> Optional[list[SchemaProperty]]:
        """Schema of the data source a page lives in, None for plain pages."""
        if parent.get("data_source_id"):
            return extract_schema(await self.client.get_data_source(parent["data_source_id"]))
        if parent.get("database_id"):
            data_source_id = await self.client.get_database_data_source_id(parent["database_id"])
            return extract_schema(await self.client.get_data_source(data_source_id))
        return None

    # --- read ----------------------------------------------------------------

    async def read(self, page: str, depth: int = 1) -> ToolResult:
        """Read a page as Markdown, plus child pages down to depth levels (1..3).

        Documents are separated with the batch delimiter, so the output can be
        edited and passed straight back to write.
        """
        depth = max(1, min(MAX_READ_DEPTH, depth))
        try:
            ref = await resolve_reference(self.client, page, ResourceKind.PAGE)
            root = await self._fetch_page(ref.id, page)
            parts: list[str] = []
            await self._read_tree(root, depth, parts)
            return ToolResult(f"\n{BATCH_DELIMITER}\n\n".join(part.strip() for part in parts) + "\n")
        except Exception as e:
            return self._failure("read", e)

    async def _read_tree(self, page: dict, remaining: int, parts: list[str]) -> None:
        parts.append(await page_to_markdown(self.client, page))
        if remaining <= 1:
            return
        for child in await self.client.list_child_pages(page["id"]):
            if child.get("object") == "page":
                await self._read_tree(child, remaining - 1, parts)

    # --- write ---------------------------------------------------------------

    async def write(self, markdown: str, mode: str = "auto") -> ToolResult:
        """Create or update pages from one document or a === separated batch."""
        if mode not in WRITE_MODES:
            return self._failure("write", NotionMcpError(
                f'Invalid mode "{mode}".', "INVALID_MODE", hint='Use "create", "update" or "auto".'
            ))

        documents = split_batch(markdown)
        if not documents:
            return self._failure("write", NotionMcpError("No document given.", "EMPTY_DOCUMENT"))

        if len(documents) == 1:
            try:
                return ToolResult(await self._write_document(documents[0], mode))
            except Exception as e:
                return self._failure("write", e)

        # Batch: sequential, each document reported on its own line
        lines = []
        failures = 0
        for i, text in enumerate(documents, 1):
            try:
                lines.append(f"{i}. {await self._write_document(text, mode)}")
            except Exception as e:
                failures += 1
                lines.append(f"{i}. ERROR: {self._failure(f'write #{i}', e).text}")

        total = len(documents)
        summary = f"Batch complete: {total - failures}/{total} succeeded.\n\n" + "\n".join(lines)
        return ToolResult(summary, is_error=failures > 0)

    async def _write_document(self, text: str, mode: str) -> str:
        document = parse_document(text)
        if mode == "update" or (mode == "auto" and document.header.id):
            return await self._update_document(document)
        return await self._create_document(document)

    async def _update_document(self, document: Document) -> str:
        header = document.header
        if not header.id:
            raise NotionMcpError(
                'Update requires "id" in front matter.', "MISSING_ID",
                hint="Read the page first and keep its id field, or use mode create.",
            )
        page_id = extract_id(header.id)
        page = await self._fetch_page(page_id, header.id)

        schema = await self._schema_for_parent(page.get("parent") or {})
        if schema is None:
            properties = build_page_properties(header)
        else:
            properties = header_to_properties(header, schema)

        body: dict = {}
        if properties:
            body["properties"] = properties
        if header.icon:
            body["icon"] = build_icon(header.icon)
        if header.cover:
            body["cover"] = build_cover(header.cover)
        if body:
            await self.client.update_page(page_id, body)

        # Full-body replacement, only when a body was given
        if document.body.strip():
            blocks = markdown_to_blocks(document.body)
            deleted = await self.client.delete_all_blocks(page_id)
            await self.client.append_block_children(page_id, blocks)
            logger.info(f"Replaced body of {page_id}: {deleted} blocks out, {len(blocks)} in")

        return f'Updated: "{header.title or get_page_title(page)}" ({page_id})'

    async def _create_document(self, document: Document) -> str:
        header = document.header
        if header.parent and header.database:
            raise NotionMcpError(
                'Front matter has both "parent" and "database".', "CONFLICTING_PARENT",
                hint="Keep exactly one of them.",
            )

        if header.database:
            ref = await resolve_reference(self.client, header.database, ResourceKind.DATABASE)
            _, data_source_id = await resolve_data_source(self.client, ref)
            schema = extract_schema(await self.client.get_data_source(data_source_id))
            parent = {"type": "data_source_id", "data_source_id": data_source_id}
            properties = header_to_properties(header, schema)
        elif header.parent:
            if header.parent.strip() == "workspace":
                raise NotionMcpError(
                    "Cannot create page at workspace root.", "INVALID_PARENT",
                    hint="Specify a parent page or database.",
                )
            ref = await resolve_reference(self.client, header.parent, ResourceKind.PAGE)
            parent = {"type": "page_id", "page_id": ref.id}
            properties = build_page_properties(header)
        else:
            raise NotionMcpError(
                'Either "parent" or "database" is required in front matter for creation.',
                "MISSING_PARENT",
                hint='Add "parent: <page name/ID/URL>" or "database: <database name/ID/URL>".',
            )

        blocks = markdown_to_blocks(document.body)
        body: dict = {"parent": parent, "properties": properties}
        if blocks:
            body["children"] = blocks[:APPEND_BATCH_SIZE]
        if header.icon:
            body["icon"] = build_icon(header.icon)
        if header.cover:
            body["cover"] = build_cover(header.cover)

        page = await self.client.create_page(body)
        if len(blocks) > APPEND_BATCH_SIZE:
            await self.client.append_block_children(page["id"], blocks[APPEND_BATCH_SIZE:])

        return f'Created: "{header.title or "Untitled"}" ({page["id"]})\nURL: {page.get("url", "")}'

    # --- search / list -------------------------------------------------------

    async def search(self, query: str, filter: str = "all", limit: int = 10) -> ToolResult:
        try:
            if filter not in SEARCH_FILTERS:
                raise NotionMcpError(
                    f'Invalid filter "{filter}".', "INVALID_FILTER", hint='Use "page", "database" or "all".'
                )
            results = await self.client.search(query, kind=SEARCH_FILTERS[filter], limit=limit)
        except Exception as e:
            return self._failure("search", e)

        lines = [f'# Search results: "{query}" ({len(results)} results)', ""]
        if not results:
            lines.append("No results found.")
        for i, item in enumerate(results, 1):
            icon = _read_icon(item.get("icon"))
            if item.get("object") == "page":
                icon = icon if icon and not icon.startswith("http") else DEFAULT_PAGE_ICON
                lines.append(f"{i}. **{get_page_title(item)}** ({icon} page)")
                lines.append(f"   - ID: `{item.get('id', '')}`")
            else:
                database_id = (item.get("parent") or {}).get("database_id", item.get("id", ""))
                lines.append(f"{i}. **{get_database_title(item)}** (database)")
                lines.append(f"   - ID: `{database_id}`")
            lines.append(f"   - Last edited: {item.get('last_edited_time', '')[:10]}")
            if item.get("url"):
                lines.append(f"   - URL: {item['url']}")
        return ToolResult("\n".join(lines).rstrip())

    async def list_target(
        self,
        target: str,
        filter: Optional[str] = None,
        sort: Optional[str] = None,
        limit: int = 50,
    ) -> ToolResult:
        """List database rows as a table, or a page's child pages."""
        limit = max(1, min(MAX_LIST_LIMIT, limit))
        try:
            ref = await resolve_reference(self.client, target)
            if ref.kind is ResourceKind.DATABASE:
                return ToolResult(await self._list_database(ref, filter, sort, limit))
            return ToolResult(await self._list_children(ref, target, limit))
        except Exception as e:
            return self._failure("list", e)

    async def _list_database(
        self, ref: ResourceRef, filter_expr: Optional[str], sort_expr: Optional[str], limit: int
    ) -> str:
        _, data_source_id = await resolve_data_source(self.client, ref)
        data_source = await self.client.get_data_source(data_source_id)
        schema = extract_schema(data_source)

        rows, has_more = await self.client.query_data_source(
            data_source_id,
            filter_obj=build_filter(filter_expr, schema),
            sorts=build_sorts(sort_expr, schema),
            limit=limit,
        )

        # Title column first, then schema order
        visible = [p for p in schema if p.type not in LIST_HIDDEN_TYPES]
        visible.sort(key=lambda p: p.type is not PropertyType.TITLE)
        columns = visible[:LIST_MAX_COLUMNS]

        filter_note = f" (filter: {filter_expr})" if filter_expr else ""
        lines = [f"# {get_database_title(data_source)}{filter_note} ({len(rows)} items)", ""]
        if not rows:
            lines.append("No records found.")
            return "\n".join(lines)

        header = ["ID"] + [c.name for c in columns]
        lines.append("| " + " | ".join(header) + " |")
        lines.append("| " + " | ".join("---" for _ in header) + " |")
        for row in rows:
            properties = row.get("properties") or {}
            cells = [row.get("id", "")[:8]]
            for column in columns:
                prop = properties.get(column.name)
                cells.append(_escape_cell(format_cell_value(prop)) if prop else "-")
            lines.append("| " + " | ".join(cells) + " |")
        if has_more:
            lines.append("")
            lines.append(f"More rows available; raise limit (currently {limit}) or narrow the filter.")
        return "\n".join(lines)

    async def _list_children(self, ref: ResourceRef, origin: str, limit: int) -> str:
        page = await self._fetch_page(ref.id, origin)
        children = await self.client.list_child_pages(ref.id, limit)

        lines = [f"# {get_page_title(page)} - child pages ({len(children)} items)", ""]
        if not children:
            lines.append("No child pages found.")
        for i, child in enumerate(children, 1):
            icon = _read_icon(child.get("icon"))
            if child.get("object") == "page":
                title = get_page_title(child)
                default_icon = DEFAULT_PAGE_ICON
            else:
                title = get_database_title(child)
                default_icon = DEFAULT_DATABASE_ICON
            if not icon or icon.startswith("http"):
                icon = default_icon
            edited = child.get("last_edited_time", "")[:10]
            lines.append(f"{i}. {icon} [{title}]({child.get('url', '')}) - {edited}")
        return "\n".join(lines)

    # --- properties / schema -------------------------------------------------

    async def update_properties(self, page: str, properties: dict[str, Any]) -> ToolResult:
        """Update page properties only; the body is untouched."""
        try:
            ref = await resolve_reference(self.client, page, ResourceKind.PAGE)
            page_obj = await self._fetch_page(ref.id, page)
            schema = await self._schema_for_parent(page_obj.get("parent") or {})
            header = DocumentHeader(properties=_normalize_yaml_value(properties or {}))
            translated = header_to_properties(header, schema or PAGE_SCHEMA)
            title = get_page_title(page_obj)
            if not translated:
                return ToolResult(f'No writable properties matched on "{title}" ({ref.id}); nothing updated.')
            await self.client.update_page(ref.id, {"properties": translated})
            return ToolResult(f'Updated: "{title}" ({ref.id}) - {", ".join(translated)}')
        except Exception as e:
            return self._failure("update", e)

    async def schema(
        self,
        database: str,
        action: str = "list",
        property: Optional[str] = None,
        type: Optional[str] = None,
        name: Optional[str] = None,
        options: Optional[list[str]] = None,
    ) -> ToolResult:
        """View or modify a database's columns: list, add, remove, rename."""
        try:
            if action not in SCHEMA_ACTIONS:
                raise NotionMcpError(
                    f'Unknown action "{action}".', "INVALID_ACTION", hint=f"Use one of: {', '.join(SCHEMA_ACTIONS)}."
                )
            ref = await resolve_reference(self.client, database, ResourceKind.DATABASE)
            _, data_source_id = await resolve_data_source(self.client, ref)
            data_source = await self.client.get_data_source(data_source_id)

            if action == "list":
                return ToolResult(self._render_schema(data_source))

            if not property:
                raise NotionMcpError(f'"property" is required for action "{action}".', "MISSING_PROPERTY")

            if action == "add":
                if not type:
                    raise NotionMcpError('"type" is required for add action.', "MISSING_TYPE")
                if type not in ADDABLE_PROPERTY_TYPES:
                    raise NotionMcpError(
                        f'Unsupported type "{type}".', "INVALID_TYPE",
                        hint=f"Supported: {', '.join(ADDABLE_PROPERTY_TYPES)}",
                    )
                await self.client.update_data_source(data_source_id, {property: _property_config(type, options)})
                return ToolResult(f'Added property "{property}" ({type})')

            existing = find_property(extract_schema(data_source), property)
            if existing is None and property not in (data_source.get("properties") or {}):
                raise NotionMcpError(
                    f'Property "{property}" not found in database.', "PROPERTY_NOT_FOUND",
                    hint="Use action list to see property names.",
                )
            actual = existing.name if existing else property

            if action == "remove":
                await self.client.update_data_source(data_source_id, {actual: None})
                return ToolResult(f'Removed property "{actual}"')

            if not name:
                raise NotionMcpError('"name" is required for rename action.', "MISSING_NAME")
            await self.client.update_data_source(data_source_id, {actual: {"name": name}})
            return ToolResult(f'Renamed "{actual}" → "{name}"')
        except Exception as e:
            return self._failure("schema", e)

    @staticmethod
    def _render_schema(data_source: dict) -> str:
        configs = data_source.get("properties") or {}
        schema = extract_schema(data_source)
        lines = [
            f"# {get_database_title(data_source)} - Schema ({len(schema)} properties)",
            "",
            "| Property | Type | Details |",
            "| --- | --- | --- |",
        ]
        for prop in schema:
            details = _escape_cell(_property_details(configs.get(prop.name) or {}))
            lines.append(f"| {_escape_cell(prop.name)} | {prop.type.value} | {details} |")
        return "\n".join(lines)

    # --- comments / archive / move -----------------------------------------

    async def comment(self, page: str, body: Optional[str] = None) -> ToolResult:
        """Add a comment when body is given, otherwise list the page's comments."""
        try:
            ref = await resolve_reference(self.client, page, ResourceKind.PAGE)
            if body and body.strip():
                await self.client.create_comment(ref.id, markdown_to_rich_text(body.strip()))
                return ToolResult(f"Comment added to {ref.id}")

            comments = await self.client.list_comments(ref.id)
            if not comments:
                return ToolResult("No comments on this page.")
            lines = [f"# Comments ({len(comments)})", ""]
            for item in comments:
                created = item.get("created_time", "")[:10]
                lines.append(f"- **{created}**: {rich_text_to_markdown(item.get('rich_text', []))}")
            return ToolResult("\n".join(lines))
        except Exception as e:
            return self._failure("comment", e)

    async def archive(self, page: str) -> ToolResult:
        """Move a page to Notion's trash (restorable from the UI)."""
        try:
            ref = await resolve_reference(self.client, page, ResourceKind.PAGE)
            page_obj = await self._fetch_page(ref.id, page)
            await self.client.archive_page(ref.id)
            return ToolResult(f'Archived: "{get_page_title(page_obj)}" ({ref.id})')
        except Exception as e:
            return self._failure("archive", e)

    async def move(self, page: str, to: str) -> ToolResult:
        """Move a page under another page, or into a database."""
        try:
            ref = await resolve_reference(self.client, page, ResourceKind.PAGE)
            page_obj = await self._fetch_page(ref.id, page)
            destination = await resolve_reference(self.client, to)
            if destination.kind is ResourceKind.PAGE:
                parent = {"type": "page_id", "page_id": destination.id}
            else:
                _, data_source_id = await resolve_data_source(self.client, destination)
                parent = {"type": "data_source_id", "data_source_id": data_source_id}
            await self.client.move_page(ref.id, parent)
            return ToolResult(f'Moved: "{get_page_title(page_obj)}" → {to} ({destination.id})')
        except Exception as e:
            return self._failure("move", e)

    async def check_auth(self) -> ToolResult:
        """Verify the token and report the bot and workspace."""
        try:
            result = await self.client.get_self()
        except Exception as e:
            return self._failure("check_auth", e)
        bot_name = result.get("name", "Unknown")
        bot_type = result.get("type", "unknown")
        workspace_name = (result.get("bot") or {}).get("workspace_name", "Unknown workspace")
        return ToolResult(f"authenticated as '{bot_name}' ({bot_type}) in workspace '{workspace_name}'")


# =============================================================================
# MCP Server
# =============================================================================


def create_server(orchestrator: Orchestrator, host: str = "127.0.0.1", port: int = 2052) -> FastMCP:
    """Register every operation as an MCP tool.

    Failed operations raise ToolError so the client sees isError=true along
    with the formatted message.
    """
    mcp = FastMCP("notion-markdown-mcp", host=host, port=port)

    def unwrap(result: ToolResult) -> str:
        if result.is_error:
            raise ToolError(result.text)
        return result.text

    @mcp.tool()
    async def notion_read(page: str, depth: int = 1) -> str:
        """Read a Notion page as Markdown with YAML front matter.

        Front matter: id, url, title, parent or database, icon, cover,
        properties (database rows), created, last_edited (read-only).
        The output can be edited and passed straight to notion_write.

        Args:
            page: Page ID (UUID or 32-char hex), Notion URL, or exact title.
            depth: 1 = this page only (default), 2 = include child pages,
                3 = include grandchildren. Pages are separated by === lines.
        """
        return unwrap(await orchestrator.read(page, depth))

    @mcp.tool()
    async def notion_write(markdown: str, mode: str = "auto") -> str:
        """Create or update pages from Markdown with YAML front matter.

        Create: give "parent" (page name/ID/URL) or "database" plus title,
        icon, cover, properties. Update: give "id"; a non-empty body replaces
        all existing content, an empty body leaves it alone. Unknown and
        read-only properties are ignored. Separate several documents with a
        line containing only ===.

        Args:
            markdown: One or more documents.
            mode: "auto" (default, update if id present), "create" or "update".
        """
        return unwrap(await orchestrator.write(markdown, mode))

    @mcp.tool()
    async def notion_search(query: str, filter: str = "all", limit: int = 10) -> str:
        """Search the workspace by title.

        Args:
            query: Keyword matched against page/database titles.
            filter: "page", "database" or "all" (default).
            limit: Max results (default 10, max 100).
        """
        return unwrap(await orchestrator.search(query, filter, limit))

    @mcp.tool()
    async def notion_list(
        target: str, filter: Optional[str] = None, sort: Optional[str] = None, limit: int = 50
    ) -> str:
        """List database rows as a Markdown table, or a page's child pages.

        Filter (databases): "Status is Done", "Priority != Low",
        "Tags contains backend", "Done is true", "Score > 80",
        "Due after 2026-03-01"; join conditions with AND.
        Sort: "Due Date asc, Priority descending".

        Args:
            target: Database or page name, ID, or URL.
            filter: Optional filter expression.
            sort: Optional sort expression.
            limit: Max rows (default 50).
        """
        return unwrap(await orchestrator.list_target(target, filter, sort, limit))

    @mcp.tool()
    async def notion_update(page: str, properties: dict[str, Any]) -> str:
        """Update page properties without touching the body.

        Args:
            page: Page name, ID, or URL.
            properties: Property name → value, e.g. {"Status": "Done", "Tags": ["a", "b"]}.
        """
        return unwrap(await orchestrator.update_properties(page, properties))

    @mcp.tool()
    async def notion_schema(
        database: str,
        action: str = "list",
        property: Optional[str] = None,
        type: Optional[str] = None,
        name: Optional[str] = None,
        options: Optional[list[str]] = None,
    ) -> str:
        """View or change database columns.

        Args:
            database: Database name, ID, or URL.
            action: "list" (default), "add", "remove" or "rename".
            property: Property name (add/remove/rename).
            type: Property type for add (select, number, rich_text, ...).
            name: New name for rename.
            options: Initial options for select/multi_select.
        """
        return unwrap(await orchestrator.schema(database, action, property, type, name, options))

    @mcp.tool()
    async def notion_comment(page: str, body: Optional[str] = None) -> str:
        """List a page's comments, or add one when body is given.

        Args:
            page: Page name, ID, or URL.
            body: Comment text (inline Markdown allowed).
        """
        return unwrap(await orchestrator.comment(page, body))

    @mcp.tool()
    async def notion_archive(page: str) -> str:
        """Archive (soft-delete) a page; it can be restored from Notion's trash.

        Args:
            page: Page name, ID, or URL.
        """
        return unwrap(await orchestrator.archive(page))

    @mcp.tool()
    async def notion_move(page: str, to: str) -> str:
        """Move a page under another page or into a database.

        Args:
            page: Page name, ID, or URL.
            to: Destination page or database: name, ID, or URL.
        """
        return unwrap(await orchestrator.move(page, to))

    @mcp.tool()
    async def notion_check_auth() -> str:
        """Verify Notion authentication and return workspace info."""
        return unwrap(await orchestrator.check_auth())

    return mcp


# =============================================================================
# HTTP Endpoints (/health)
# =============================================================================


def create_http_app(mcp: FastMCP, client: NotionClient):
    """Streamable HTTP app with a /health route for easy testing."""

    async def health_endpoint(request: Request) -> JSONResponse:
        try:
            result = await client.get_self()
            workspace = (result.get("bot") or {}).get("workspace_name", "connected")
        except (NotionApiError, httpx.HTTPError) as e:
            workspace = f"error: {type(e).__name__}"
        return JSONResponse({
            "status": "ok",
            "token_loaded": True,
            "workspace": workspace,
        })

    app = mcp.streamable_http_app()
    app.add_route("/health", health_endpoint, methods=["GET"])
    return app


# =============================================================================
# Main Entry Point
# =============================================================================


def load_token(token_file: Optional[str]) -> str:
    """Read the token from --token-file, falling back to NOTION_API_KEY."""
    if token_file:
        token_path = Path(token_file).expanduser()
        if not token_path.exists():
            logger.error(f"Token file not found: {token_path}")
            raise SystemExit(1)
        logger.info(f"Notion token loaded from {token_path}")
        return token_path.read_text().strip()
    return os.environ.get("NOTION_API_KEY", "").strip()


def main():
    """Run the Notion Markdown MCP server.

    Supports two transport modes:
    - stdio (default): the MCP client launches this process
    - http: standalone server on localhost (port 2052 by default)

    Usage:
        notion-markdown-mcp                          # stdio, token from NOTION_API_KEY
        notion-markdown-mcp --token-file ~/.notion   # stdio, token from file
        notion-markdown-mcp --http                   # HTTP mode on localhost:2052
    """
    import argparse

    parser = argparse.ArgumentParser(description="Notion Markdown MCP Server")
    parser.add_argument(
        "--token-file",
        help="Path to file containing Notion API token (default: NOTION_API_KEY env var)"
    )
    parser.add_argument(
        "--http",
        action="store_true",
        help="Run as HTTP server on localhost instead of stdio"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=2052,
        help="Port for --http mode (default: 2052)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    token = load_token(args.token_file)
    if not token:
        logger.error("No Notion token. Pass --token-file <path> or set NOTION_API_KEY.")
        raise SystemExit(1)

    client = NotionClient(token)
    mcp = create_server(Orchestrator(client), port=args.port)

    if args.http:
        import uvicorn

        app = create_http_app(mcp, client)
        logger.info(f"Starting Notion Markdown MCP server on http://127.0.0.1:{args.port}")
        uvicorn.run(app, host="127.0.0.1", port=args.port, log_level="warning")
    else:
        mcp.run()


if __name__ == "__main__":
    main()
