"""NPM registry and replicate change feed client."""

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from scriptwatch import __version__
from scriptwatch.adapters.base import (
    BaseRegistryClient,
    NotFoundError,
    ProtocolError,
    TransportError,
)
from scriptwatch.models.schemas import ChangeBatch, ChangeEvent, Cursor, Packument

logger = logging.getLogger(__name__)


class NpmRegistryClient(BaseRegistryClient):
    """Client for the npm registry and its CouchDB-style replicate feed.

    Data sources:
    - Feed head: https://replicate.npmjs.com/ (update_seq)
    - Change feed: https://replicate.npmjs.com/_changes?since=...&limit=...
    - Packuments: https://registry.npmjs.org/{package}
    """

    REPLICATE_DB_URL = "https://replicate.npmjs.com/"
    CHANGES_URL = "https://replicate.npmjs.com/_changes"
    REGISTRY_URL = "https://registry.npmjs.org/"

    # Abbreviated ("corgi") metadata is much smaller than the full document
    ABBREVIATED_ACCEPT = "application/vnd.npm.install-v1+json"
    FULL_ACCEPT = "application/json"

    MAX_BATCH_LIMIT = 5000
    MAX_RESPONSE_BYTES = 20 * 1024 * 1024

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        replicate_db_url: str | None = None,
        changes_url: str | None = None,
        registry_url: str | None = None,
        timeout: float = 60.0,
        full_metadata: bool = False,
        max_response_bytes: int | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            client: Optional httpx client shared across requests. If not
                provided, a client is opened and closed per request.
            replicate_db_url: Database info endpoint exposing `update_seq`.
            changes_url: `_changes` endpoint of the replicate database.
            registry_url: Registry base URL for packument reads.
            timeout: Per-request timeout in seconds.
            full_metadata: Request full packuments instead of abbreviated ones.
            max_response_bytes: Reject bodies larger than this.
        """
        self._client = client
        self.replicate_db_url = replicate_db_url or self.REPLICATE_DB_URL
        self.changes_url = changes_url or self.CHANGES_URL
        self.registry_url = registry_url or self.REGISTRY_URL
        self.timeout = timeout
        self.accept = self.FULL_ACCEPT if full_metadata else self.ABBREVIATED_ACCEPT
        self.max_response_bytes = max_response_bytes or self.MAX_RESPONSE_BYTES

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client."""
        if self._client is not None:
            return self._client
        return httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)

    async def _fetch_json(
        self,
        url: str,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        package: str | None = None,
    ) -> Any:
        """Fetch JSON from a URL, mapping failures onto the error taxonomy.

        A 404 is a NotFoundError only for package reads (`package` set);
        elsewhere it is a TransportError like any other bad status.
        """
        request_headers = {
            "User-Agent": f"scriptwatch/{__version__}",
            "Accept": "application/json",
        }
        request_headers.update(headers or {})

        client = await self._get_client()
        try:
            async with client.stream(
                "GET",
                url,
                params=params,
                headers=request_headers,
                timeout=self.timeout,
            ) as response:
                if response.status_code == 404 and package is not None:
                    raise NotFoundError(package)
                if response.status_code != 200:
                    snippet = await self._read_body(response, url, limit=200, truncate=True)
                    raise TransportError(
                        f"HTTP {response.status_code}: "
                        f"{snippet.decode('utf-8', errors='replace')}",
                        status_code=response.status_code,
                    )
                body = await self._read_body(response, url, limit=self.max_response_bytes)
        except httpx.TimeoutException as e:
            raise TransportError("timeout") from e
        except httpx.HTTPError as e:
            raise TransportError(f"request failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        try:
            return json.loads(body)
        except ValueError as e:
            raise ProtocolError(f"invalid JSON from {url}: {e}") from e

    @staticmethod
    async def _read_body(
        response: httpx.Response,
        url: str,
        limit: int,
        truncate: bool = False,
    ) -> bytes:
        """Read a streamed body, stopping once it exceeds `limit` bytes.

        Oversized bodies raise ProtocolError, or are cut to `limit` when
        `truncate` is set. A declared Content-Length over the limit is
        rejected before any of the body is read.
        """
        if not truncate:
            try:
                declared = int(response.headers.get("content-length", "0"))
            except ValueError:
                declared = 0
            if declared > limit:
                raise ProtocolError(f"response too large ({declared} bytes) from {url}")

        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > limit:
                if truncate:
                    return bytes(body[:limit])
                raise ProtocolError(f"response too large (over {limit} bytes) from {url}")
        return bytes(body)

    async def get_current_cursor(self) -> Cursor:
        """Return the replicate database's current `update_seq`."""
        data = await self._fetch_json(self.replicate_db_url)
        if not isinstance(data, dict) or data.get("update_seq") is None:
            raise ProtocolError("replicate db info missing update_seq")
        return data["update_seq"]

    async def get_change_batch(self, cursor: Cursor, limit: int) -> ChangeBatch:
        """Fetch one page of the `_changes` feed.

        Args:
            cursor: Position to read from (exclusive).
            limit: Maximum rows, clamped to 1..5000.

        Returns:
            ChangeBatch with the rows and the feed's `last_seq`.
        """
        limit = max(1, min(self.MAX_BATCH_LIMIT, limit))
        data = await self._fetch_json(
            self.changes_url,
            params={"since": str(cursor), "limit": str(limit)},
        )

        if (
            not isinstance(data, dict)
            or not isinstance(data.get("results"), list)
            or data.get("last_seq") is None
        ):
            raise ProtocolError("unexpected _changes response shape")

        rows = [
            ChangeEvent(package_name=row["id"])
            for row in data["results"]
            if isinstance(row, dict) and isinstance(row.get("id"), str)
        ]
        return ChangeBatch(rows=rows, next_cursor=data["last_seq"])

    async def get_packument(self, name: str) -> Packument:
        """Fetch a package's version history.

        Args:
            name: Package name (supports scoped packages like @org/pkg).

        Returns:
            Packument with versions, publish times and dist-tags.

        Raises:
            NotFoundError: If the package doesn't exist.
        """
        # Scoped names keep the @ but must encode the slash: @scope%2Fname
        url = f"{self.registry_url.rstrip('/')}/{quote(name, safe='@')}"

        data = await self._fetch_json(
            url, headers={"Accept": self.accept}, package=name
        )

        if not isinstance(data, dict):
            raise ProtocolError(f"packument for {name} is not an object")

        try:
            packument = Packument.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"malformed packument for {name}: {e}") from e

        if not packument.name:
            packument.name = name
        return packument
