"""
WebDAV helpers: URL construction and input validation.
"""

import re
from typing import Optional, Tuple
from urllib.parse import urlparse

import httpx

SERVER_TYPES = ("nextcloud", "owncloud", "generic")

_SAFE_PATH = re.compile(r"^[a-zA-Z0-9/_.\-]+$")


def normalize_server_url(url: str) -> str:
    """Add https:// when no scheme is given and strip the trailing slash."""
    clean = url.strip()
    if not clean.startswith(("http://", "https://")):
        clean = "https://" + clean
    return clean.rstrip("/")


def validate_server_url(url: Optional[str]) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Validate a WebDAV server URL.

    Returns:
        Tuple of (valid, error message, cleaned URL)
    """
    if not url or not isinstance(url, str) or not url.strip():
        return False, "Server URL is required", None

    clean = normalize_server_url(url)
    parsed = urlparse(clean)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False, "Invalid URL", None

    return True, None, clean


def validate_file_path(path: Optional[str]) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Validate the document path on the server.

    Returns:
        Tuple of (valid, error message, cleaned path)
    """
    if not path or not isinstance(path, str) or not path.strip():
        return False, "File path is required", None

    clean = path.strip()
    if not clean.startswith("/"):
        clean = "/" + clean

    if not _SAFE_PATH.match(clean):
        return False, "File path contains invalid characters", None

    if not clean.endswith(".json"):
        return False, "File path must end with .json", None

    return True, None, clean


def construct_webdav_url(
    server_url: str,
    username: str,
    file_path: str,
    server_type: str = "nextcloud",
) -> str:
    """Build the full WebDAV URL of a document for a given server flavour."""
    clean_url = server_url.rstrip("/")
    clean_path = file_path if file_path.startswith("/") else f"/{file_path}"

    if server_type == "nextcloud":
        return f"{clean_url}/remote.php/dav/files/{username}{clean_path}"
    if server_type == "owncloud":
        return f"{clean_url}/remote.php/webdav{clean_path}"
    return f"{clean_url}{clean_path}"


async def detect_server_type(server_url: str, client: Optional[httpx.AsyncClient] = None) -> str:
    """
    Detect Nextcloud/ownCloud through their status.php endpoint.

    Returns:
        'nextcloud', 'owncloud' or 'generic'
    """
    url = f"{server_url.rstrip('/')}/status.php"
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    try:
        response = await client.get(url)
        if response.status_code != 200:
            return "generic"
        body = response.json()
    except (httpx.HTTPError, ValueError):
        return "generic"
    finally:
        if owns_client:
            await client.aclose()

    product = body.get("productname") if isinstance(body, dict) else None
    if product == "Nextcloud":
        return "nextcloud"
    if product == "ownCloud":
        return "owncloud"
    return "generic"
