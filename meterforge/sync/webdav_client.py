"""
Minimal async WebDAV client.

Speaks the handful of verbs the WebDAV adapter needs (PROPFIND for
existence checks, GET, PUT, MKCOL) over httpx with basic auth. HTTP
errors are raised as httpx exceptions; the adapter classifies them.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:resourcetype/></d:prop></d:propfind>'
)


class WebDAVClient:
    """Async WebDAV client bound to one server and account."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: WebDAV root URL; paths are resolved below it
            username: Account name
            password: Password or app password
            timeout: Request timeout in seconds
            transport: Custom httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(username, password),
            timeout=timeout,
            transport=transport,
        )

    async def exists(self, path: str) -> bool:
        """Check whether a resource exists."""
        response = await self._client.request(
            "PROPFIND",
            path,
            headers={"Depth": "0", "Content-Type": "application/xml"},
            content=PROPFIND_BODY,
        )
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    async def get_file_contents(self, path: str) -> str:
        """Download a document as text."""
        response = await self._client.get(path)
        response.raise_for_status()
        return response.text

    async def put_file_contents(self, path: str, content: str, overwrite: bool = True) -> None:
        """Upload a document, replacing it unless overwrite is False."""
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if not overwrite:
            headers["If-None-Match"] = "*"
        response = await self._client.put(path, content=content.encode("utf-8"), headers=headers)
        response.raise_for_status()

    async def create_directory(self, path: str, recursive: bool = True) -> None:
        """Create a collection, and its parents when recursive."""
        segments = [s for s in path.strip("/").split("/") if s]
        targets = (
            ["/" + "/".join(segments[: i + 1]) for i in range(len(segments))]
            if recursive
            else ["/" + "/".join(segments)]
        )

        for target in targets:
            response = await self._client.request("MKCOL", target)
            # 405 Method Not Allowed: the collection already exists
            if response.status_code == 405:
                continue
            response.raise_for_status()
            logger.debug(f"Created WebDAV collection {target}")

    async def aclose(self) -> None:
        await self._client.aclose()
