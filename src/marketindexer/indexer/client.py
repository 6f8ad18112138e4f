"""
Async HTTP client for an Elasticsearch-compatible index store.

Only the endpoints the indexer needs:
- GET /              connectivity check at startup
- GET /_nodes/http   host sniffing (optional)
- HEAD/PUT /<index>  bootstrap
- POST /_bulk        NDJSON bulk writes

Requests rotate over the configured hosts; a connection error moves on to
the next host before the request is given up.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp
import orjson

if TYPE_CHECKING:
    from collections.abc import Sequence

    from marketindexer.contracts.events import IndexOperation

logger = logging.getLogger(__name__)

NDJSON_CONTENT_TYPE = "application/x-ndjson"


class IndexStoreError(Exception):
    """Raised when the index store answers with an unexpected status."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class IndexStoreConnectionError(IndexStoreError):
    """Raised when no configured host can be reached."""


@dataclass
class IndexStoreConfig:
    """
    Index store connection settings.

    Attributes:
        hosts: Base URLs (e.g., "http://localhost:9200").
        username: Basic-auth user (empty = no auth).
        password: Basic-auth password.
        sniff: Replace hosts with the cluster's HTTP nodes on start.
        mapping_types: Emit `_type` in bulk actions (legacy clusters).
        request_timeout_s: Total timeout per request.
    """

    hosts: list[str] = field(default_factory=lambda: ["http://localhost:9200"])
    username: str = ""
    password: str = ""
    sniff: bool = False
    mapping_types: bool = False
    request_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        if not self.hosts:
            raise ValueError("hosts must not be empty")
        if self.request_timeout_s <= 0:
            raise ValueError(f"request_timeout_s must be > 0, got {self.request_timeout_s}")
        self.hosts = [h.rstrip("/") for h in self.hosts]


@dataclass
class BulkItemResult:
    """Per-document result from a bulk response."""

    status: int
    index: str | None = None
    doc_id: str | None = None
    error: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300 and self.error is None


@dataclass
class BulkResponse:
    """
    Parsed bulk response.

    Attributes:
        took_ms: Server-side processing time.
        errors: Whether the store flagged any item as failed.
        items: Per-document results, in request order.
    """

    took_ms: int = 0
    errors: bool = False
    items: list[BulkItemResult] = field(default_factory=list)

    @property
    def succeeded(self) -> list[BulkItemResult]:
        return [item for item in self.items if item.ok]

    @property
    def failed(self) -> list[BulkItemResult]:
        return [item for item in self.items if not item.ok]

    @classmethod
    def from_raw(cls, data: dict[str, Any]) -> BulkResponse:
        """Parse a raw `_bulk` response body."""
        items: list[BulkItemResult] = []
        for raw_item in data.get("items", []):
            # Each item is keyed by its action: {"index": {...}}
            result = next(iter(raw_item.values()), {}) if raw_item else {}
            items.append(
                BulkItemResult(
                    status=int(result.get("status", 0)),
                    index=result.get("_index"),
                    doc_id=result.get("_id"),
                    error=result.get("error"),
                )
            )
        return cls(
            took_ms=int(data.get("took", 0)),
            errors=bool(data.get("errors", False)),
            items=items,
        )


class IndexStoreClient:
    """
    Async client for the index store.

    One aiohttp session is shared by all requests; close() releases it.
    """

    def __init__(self, config: IndexStoreConfig | None = None) -> None:
        """
        Initialize the client.

        Args:
            config: Connection settings.
        """
        self._config = config or IndexStoreConfig()
        self._hosts: list[str] = list(self._config.hosts)
        self._host_cycle = itertools.cycle(self._hosts)
        self._session: aiohttp.ClientSession | None = None
        self._auth: aiohttp.BasicAuth | None = None
        if self._config.username:
            self._auth = aiohttp.BasicAuth(self._config.username, self._config.password)

    @property
    def hosts(self) -> list[str]:
        """Hosts currently in rotation."""
        return list(self._hosts)

    @property
    def closed(self) -> bool:
        return self._session is None or self._session.closed

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout, auth=self._auth)
        return self._session

    def _set_hosts(self, hosts: Sequence[str]) -> None:
        self._hosts = [h.rstrip("/") for h in hosts]
        self._host_cycle = itertools.cycle(self._hosts)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
            logger.info("Index store client closed")

    async def start(self) -> None:
        """
        Check connectivity and, if enabled, sniff the cluster's HTTP nodes.

        Raises:
            IndexStoreConnectionError: If no host answers.
        """
        info = await self._request("GET", "/")
        logger.info(
            "Index store client successfully initialized",
            extra={
                "cluster": info.get("cluster_name") if isinstance(info, dict) else None,
                "hosts": len(self._hosts),
            },
        )
        if self._config.sniff:
            await self.sniff()

    async def sniff(self) -> list[str]:
        """
        Replace the host list with the cluster's HTTP publish addresses.

        Keeps the current hosts if the cluster reports none.
        """
        data = await self._request("GET", "/_nodes/http")
        scheme = self._hosts[0].split("://", 1)[0] if "://" in self._hosts[0] else "http"
        discovered: list[str] = []
        for node in (data.get("nodes") or {}).values():
            address = (node.get("http") or {}).get("publish_address")
            if not address:
                continue
            # Newer clusters report "hostname/ip:port"
            if "/" in address:
                address = address.split("/", 1)[1]
            discovered.append(f"{scheme}://{address}")

        if discovered:
            self._set_hosts(sorted(discovered))
            logger.info("Sniffed index store nodes", extra={"hosts": len(discovered)})
        else:
            logger.warning("Sniffing found no HTTP nodes, keeping configured hosts")
        return self.hosts

    async def index_exists(self, index: str) -> bool:
        """Check whether an index exists."""
        status, _ = await self._send("HEAD", f"/{index}")
        if status == 200:
            return True
        if status == 404:
            return False
        raise IndexStoreError(f"Unexpected status checking index {index}: {status}", status)

    async def create_index(self, index: str, body: str | bytes) -> dict[str, Any]:
        """Create an index from a JSON definition."""
        return await self._request(
            "PUT",
            f"/{index}",
            data=body,
            headers={"Content-Type": "application/json"},
        )

    async def bulk(self, operations: Sequence[IndexOperation]) -> BulkResponse:
        """
        Send index operations as one NDJSON bulk request.

        Operations the response has no item for are reported as failed.

        Raises:
            IndexStoreError: On a non-2xx or unreadable response, or if no host
                is reachable.
        """
        if not operations:
            return BulkResponse()

        lines: list[bytes] = []
        for op in operations:
            lines.extend(op.to_bulk_lines(mapping_types=self._config.mapping_types))
        body = b"\n".join(lines) + b"\n"

        data = await self._request(
            "POST",
            "/_bulk",
            data=body,
            headers={"Content-Type": NDJSON_CONTENT_TYPE},
        )
        if not isinstance(data, dict):
            raise IndexStoreError("POST /_bulk: response is not a JSON object")

        response = BulkResponse.from_raw(data)
        missing = len(operations) - len(response.items)
        if missing > 0:
            logger.warning(
                "Bulk response is missing items",
                extra={"operations": len(operations), "items": len(response.items)},
            )
            response.items.extend(
                BulkItemResult(status=0, error="missing from bulk response") for _ in range(missing)
            )
            response.errors = True
        return response

    async def _request(
        self,
        method: str,
        path: str,
        *,
        data: str | bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        """Send a request and decode the JSON body of a 2xx response."""
        status, body = await self._send(method, path, data=data, headers=headers)
        if not 200 <= status < 300:
            text = body.decode(errors="replace")[:200]
            raise IndexStoreError(f"{method} {path} failed: HTTP {status}: {text}", status)
        if not body:
            return {}
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise IndexStoreError(f"{method} {path}: invalid JSON response: {e}", status) from e

    async def _send(
        self,
        method: str,
        path: str,
        *,
        data: str | bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[int, bytes]:
        """
        Send a request, failing over to the next host on connection errors.

        Returns:
            (status, raw body)

        Raises:
            IndexStoreConnectionError: If every host failed to connect.
            IndexStoreError: If a host answered with an unreadable response.
        """
        session = await self._get_session()
        last_error: Exception | None = None

        for _ in range(len(self._hosts)):
            host = next(self._host_cycle)
            try:
                async with session.request(method, f"{host}{path}", data=data, headers=headers) as resp:
                    return resp.status, await resp.read()
            except (aiohttp.ClientConnectionError, TimeoutError) as e:
                last_error = e
                logger.warning(
                    "Index store request failed",
                    extra={"method": method, "endpoint": path, "error": str(e)},
                )
            except aiohttp.ClientError as e:
                # Broken or malformed response from a reachable host
                raise IndexStoreError(f"{method} {path} failed: {e}") from e

        raise IndexStoreConnectionError(
            f"{method} {path}: no index store host reachable: {last_error}"
        )
