#!/usr/bin/env python3
"""
Redash MCP Server
Exposes Redash queries and data sources as MCP tools.

Setup:
  1. pip install -e .
  2. Create an API key in Redash (Settings > Account > API Key)
  3. Set REDASH_BASE_URL and REDASH_API_KEY env vars (or pass them in the
     MCP client config)
  4. Run `redash-mcp-server` for stdio, or `redash-mcp-server --http :8080`
     for streamable HTTP

Every tool returns two text blocks: a one-line summary and a compact JSON
payload. Failures talking to Redash are reported inside that envelope, never
as protocol errors.
"""

import argparse
import json
import logging
import os
import sys
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from mcp.server.fastmcp import FastMCP
from mcp.types import TextContent, ToolAnnotations
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

# ─── Configuration ───────────────────────────────────────────────────────────

SERVER_NAME = "redash_mcp"
BASE_URL_ENV = "REDASH_BASE_URL"
API_KEY_ENV = "REDASH_API_KEY"
REQUEST_TIMEOUT = 30.0

logger = logging.getLogger("redash_mcp")

# ─── Errors ──────────────────────────────────────────────────────────────────


class RedashError(Exception):
    """Base class for failures reaching or understanding Redash."""


class MissingCredentialsError(RedashError):
    """REDASH_BASE_URL or REDASH_API_KEY is absent or empty."""


class TransportError(RedashError):
    """The request never got an HTTP response (DNS, refused, timeout, bad URL)."""


class RemoteError(RedashError):
    """Redash answered with a status code the operation does not accept."""

    def __init__(self, status_code: int, reason: str) -> None:
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Redash API request failed: {status_code} {reason}".rstrip())


class DecodeError(RedashError):
    """The response body is not JSON or does not have the expected shape."""


# ─── Remote Models ───────────────────────────────────────────────────────────


class Query(BaseModel):
    """Query as it appears in the list view."""

    id: int
    name: str


class QueryDetail(BaseModel):
    """Single query including its SQL text."""

    id: int
    name: str
    query: str


class DataSource(BaseModel):
    id: int
    name: str
    type: str


class QueryList(BaseModel):
    results: List[Query] = Field(default_factory=list)


_DATA_SOURCES = TypeAdapter(List[DataSource])

# ─── HTTP Client ─────────────────────────────────────────────────────────────


class RedashClient:
    """Authenticated client for the Redash REST API.

    One instance per tool call. Each operation issues exactly one request on
    a short-lived ``httpx.AsyncClient``; nothing is retried.
    """

    def __init__(self, base_url: str, api_key: str) -> None:
        if not base_url or not api_key:
            raise MissingCredentialsError(f"{BASE_URL_ENV} or {API_KEY_ENV} is not set")
        self.base_url = base_url
        self.api_key = api_key

    @classmethod
    def from_env(cls) -> "RedashClient":
        """Build a client from the current environment."""
        return cls(os.environ.get(BASE_URL_ENV, ""), os.environ.get(API_KEY_ENV, ""))

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        accept: Tuple[int, ...] = (200,),
    ) -> httpx.Response:
        """Send one authenticated request and check its status."""
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Key {self.api_key}"}
        if json_body is not None:
            headers["Content-Type"] = "application/json"

        logger.debug("%s %s", method, url)
        try:
            async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
                response = await client.request(
                    method, url, headers=headers, json=json_body
                )
        except (httpx.RequestError, httpx.InvalidURL) as e:
            raise TransportError(str(e) or type(e).__name__) from e
        except UnicodeEncodeError as e:
            # Header values must be ASCII.
            raise TransportError(f"cannot encode request: {e}") from e

        if response.status_code not in accept:
            raise RemoteError(response.status_code, response.reason_phrase)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"invalid JSON in response: {e}") from e

    @staticmethod
    def _validate(validator: Callable[[Any], Any], data: Any) -> Any:
        try:
            return validator(data)
        except ValidationError as e:
            raise DecodeError(f"unexpected response shape: {e}") from e

    async def list_queries(self) -> List[Query]:
        response = await self._request("GET", "/api/queries")
        page = self._validate(QueryList.model_validate, self._json(response))
        return page.results

    async def get_query(self, query_id: int) -> QueryDetail:
        response = await self._request("GET", f"/api/queries/{query_id}")
        return self._validate(QueryDetail.model_validate, self._json(response))

    async def create_query(
        self, name: str, query: str, data_source_id: int
    ) -> QueryDetail:
        response = await self._request(
            "POST",
            "/api/queries",
            json_body={"name": name, "query": query, "data_source_id": data_source_id},
            accept=(200, 201),
        )
        return self._validate(QueryDetail.model_validate, self._json(response))

    async def update_query(
        self, query_id: int, name: str, query: str, data_source_id: int
    ) -> QueryDetail:
        """Update a query in place.

        Redash routes updates through POST on the query resource, so this is
        deliberately not a PUT or PATCH.
        """
        response = await self._request(
            "POST",
            f"/api/queries/{query_id}",
            json_body={"name": name, "query": query, "data_source_id": data_source_id},
        )
        return self._validate(QueryDetail.model_validate, self._json(response))

    async def archive_query(self, query_id: int) -> None:
        """Soft-delete a query. The response body is ignored."""
        await self._request("DELETE", f"/api/queries/{query_id}")

    async def execute_query(self, query_id: int) -> Any:
        """Run a query and return its result.

        Returns the ``query_result`` member when present, otherwise the whole
        decoded object unchanged.
        """
        response = await self._request(
            "POST", f"/api/queries/{query_id}/results", json_body={}
        )
        data = self._json(response)
        if not isinstance(data, dict):
            raise DecodeError(
                f"unexpected response shape: expected object, got {type(data).__name__}"
            )
        if "query_result" in data:
            return data["query_result"]
        return data

    async def list_data_sources(self) -> List[DataSource]:
        response = await self._request("GET", "/api/data_sources")
        return self._validate(_DATA_SOURCES.validate_python, self._json(response))


# ─── Tool Results ────────────────────────────────────────────────────────────


class ToolResult(BaseModel):
    """Envelope returned for every tool call.

    ``ok`` is False when the tool ran but the Redash operation failed; the
    payload then carries the tool's empty/null shape. Malformed invocations
    never reach an adapter and are not represented here.
    """

    model_config = ConfigDict(frozen=True)

    ok: bool
    summary: str
    payload: Dict[str, Any]

    @classmethod
    def success(cls, summary: str, payload: Dict[str, Any]) -> "ToolResult":
        return cls(ok=True, summary=summary, payload=payload)

    @classmethod
    def failure(cls, summary: str, payload: Dict[str, Any]) -> "ToolResult":
        return cls(ok=False, summary=summary, payload=payload)

    def to_content(self) -> List[TextContent]:
        """Render as summary text followed by compact JSON.

        Serialization errors propagate: they are bugs in the adapter, not
        Redash failures.
        """
        body = json.dumps(self.payload, separators=(",", ":"), ensure_ascii=False)
        return [
            TextContent(type="text", text=self.summary),
            TextContent(type="text", text=body),
        ]


async def _invoke(
    action: str,
    operation: Callable[[RedashClient], Awaitable[ToolResult]],
    failed: Callable[[str], Dict[str, Any]],
) -> ToolResult:
    """Run one client operation and map any Redash failure into a ToolResult.

    Args:
        action: Verb phrase used in the failure summary ("fetch queries").
        operation: Coroutine performing the request and building the success result.
        failed: Builds the failure payload from the error text.
    """
    logger.info("Redash: %s", action)
    try:
        client = RedashClient.from_env()
    except MissingCredentialsError as e:
        logger.warning("Failed to create client: %s", e)
        return ToolResult.failure(f"Failed to create client: {e}", failed(str(e)))

    try:
        return await operation(client)
    except RedashError as e:
        logger.warning("Failed to %s: %s", action, e)
        return ToolResult.failure(f"Failed to {action}: {e}", failed(str(e)))


# ─── Tool Adapters ───────────────────────────────────────────────────────────

QueryId = Annotated[int, Field(description="Redash query ID")]
QueryName = Annotated[str, Field(description="Display name of the query")]
QueryText = Annotated[str, Field(description="Query text (e.g., SQL) to store")]
DataSourceId = Annotated[
    int, Field(description="ID of the data source the query runs against (see list_data_sources)")
]


async def list_queries() -> List[TextContent]:
    """List Redash queries with their IDs and names."""

    async def operation(client: RedashClient) -> ToolResult:
        queries = await client.list_queries()
        return ToolResult.success(
            f"Fetched {len(queries)} queries.",
            {"queries": [q.model_dump() for q in queries]},
        )

    result = await _invoke("fetch queries", operation, lambda _: {"queries": []})
    return result.to_content()


async def get_query(id: QueryId) -> List[TextContent]:
    """Get one Redash query including its query text."""

    async def operation(client: RedashClient) -> ToolResult:
        query = await client.get_query(id)
        return ToolResult.success("Fetched query details.", {"query": query.model_dump()})

    result = await _invoke("fetch query", operation, lambda _: {"query": None})
    return result.to_content()


async def create_query(
    name: QueryName, query: QueryText, data_source_id: DataSourceId
) -> List[TextContent]:
    """Create a new Redash query."""

    async def operation(client: RedashClient) -> ToolResult:
        created = await client.create_query(name, query, data_source_id)
        return ToolResult.success("Created new query.", {"query": created.model_dump()})

    result = await _invoke("create query", operation, lambda _: {"query": None})
    return result.to_content()


async def update_query(
    id: QueryId, name: QueryName, query: QueryText, data_source_id: DataSourceId
) -> List[TextContent]:
    """Replace the name, text and data source of an existing query."""

    async def operation(client: RedashClient) -> ToolResult:
        updated = await client.update_query(id, name, query, data_source_id)
        return ToolResult.success("Updated query.", {"query": updated.model_dump()})

    result = await _invoke("update query", operation, lambda _: {"query": None})
    return result.to_content()


async def execute_query(id: QueryId) -> List[TextContent]:
    """Run a Redash query and return its latest result."""

    async def operation(client: RedashClient) -> ToolResult:
        query_result = await client.execute_query(id)
        return ToolResult.success(
            "Executed query and fetched result.", {"query_result": query_result}
        )

    result = await _invoke("execute query", operation, lambda _: {"query_result": None})
    return result.to_content()


async def archive_query(id: QueryId) -> List[TextContent]:
    """Archive (soft-delete) a Redash query."""

    async def operation(client: RedashClient) -> ToolResult:
        await client.archive_query(id)
        return ToolResult.success(
            "Query archived.", {"success": True, "message": "Query archived."}
        )

    result = await _invoke(
        "archive query",
        operation,
        lambda error: {"success": False, "message": error},
    )
    return result.to_content()


async def list_data_sources() -> List[TextContent]:
    """List Redash data sources with their IDs and types."""

    async def operation(client: RedashClient) -> ToolResult:
        sources = await client.list_data_sources()
        return ToolResult.success(
            f"Fetched {len(sources)} data sources.",
            {"data_sources": [s.model_dump() for s in sources]},
        )

    result = await _invoke("fetch data sources", operation, lambda _: {"data_sources": []})
    return result.to_content()


# ─── Tool Registry ───────────────────────────────────────────────────────────


class ToolSpec(BaseModel):
    """Registry entry. The handler's signature is the tool's argument schema."""

    model_config = ConfigDict(frozen=True)

    name: str
    title: str
    description: str
    handler: Callable[..., Any]
    read_only: bool = True
    destructive: bool = False
    idempotent: bool = True

    def annotations(self) -> ToolAnnotations:
        return ToolAnnotations(
            title=self.title,
            readOnlyHint=self.read_only,
            destructiveHint=self.destructive,
            idempotentHint=self.idempotent,
            openWorldHint=True,
        )


TOOLS: Tuple[ToolSpec, ...] = (
    ToolSpec(
        name="list_queries",
        title="List Redash Queries",
        description="Get a list of Redash queries (ID and name).",
        handler=list_queries,
    ),
    ToolSpec(
        name="get_query",
        title="Get Redash Query",
        description="Get details of a specific Redash query, including its query text.",
        handler=get_query,
    ),
    ToolSpec(
        name="create_query",
        title="Create Redash Query",
        description="Create a new Redash query on the given data source.",
        handler=create_query,
        read_only=False,
        idempotent=False,
    ),
    ToolSpec(
        name="update_query",
        title="Update Redash Query",
        description="Update the name, query text and data source of an existing Redash query.",
        handler=update_query,
        read_only=False,
    ),
    ToolSpec(
        name="execute_query",
        title="Execute Redash Query",
        description="Execute a Redash query and return the result.",
        handler=execute_query,
        read_only=False,
        idempotent=False,
    ),
    ToolSpec(
        name="archive_query",
        title="Archive Redash Query",
        description="Archive (soft-delete) a Redash query.",
        handler=archive_query,
        read_only=False,
        destructive=True,
    ),
    ToolSpec(
        name="list_data_sources",
        title="List Redash Data Sources",
        description="List all available Redash data sources.",
        handler=list_data_sources,
    ),
)


def build_server(
    tools: Sequence[ToolSpec] = TOOLS, host: str = "127.0.0.1", port: int = 8000
) -> FastMCP:
    """Create the FastMCP server with every registry entry attached.

    FastMCP derives its allowed Host headers from ``host`` at construction, so
    the HTTP address has to be known here rather than set afterwards.
    """
    server = FastMCP(SERVER_NAME, host=host, port=port)
    for tool in tools:
        server.add_tool(
            tool.handler,
            name=tool.name,
            description=tool.description,
            annotations=tool.annotations(),
            structured_output=False,
        )
    return server


mcp = build_server()

# ─── Entry Point ─────────────────────────────────────────────────────────────


def _parse_address(value: str) -> Tuple[str, int]:
    """Parse ``host:port``; an empty host binds all interfaces."""
    host, _, port = value.rpartition(":")
    if not port.isdigit():
        raise argparse.ArgumentTypeError(f"invalid address {value!r}, expected host:port")
    return host or "0.0.0.0", int(port)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="redash-mcp-server", description="MCP server for the Redash API"
    )
    parser.add_argument(
        "--http",
        metavar="ADDR",
        type=_parse_address,
        help="serve streamable HTTP at host:port instead of stdin/stdout",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="log level for stderr output (default: INFO)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = _build_parser().parse_args(argv)

    # stdout carries the stdio transport, so logs go to stderr.
    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )
    logger.setLevel(args.log_level)

    if args.http:
        host, port = args.http
        server = build_server(host=host, port=port)
        logger.info("MCP handler listening at %s:%d", host, port)
        server.run(transport="streamable-http")
    else:
        logger.info("Serving MCP over stdio")
        mcp.run()


if __name__ == "__main__":
    main()
