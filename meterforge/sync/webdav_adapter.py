"""
WebDAV Storage Adapter.

Syncs the dataset as a single JSON document on a WebDAV server
(Nextcloud, ownCloud or any generic server). Saves are retried with
exponential backoff on transient failures; authentication failures are
never retried.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel

from meterforge.models import AdapterStatus, ConflictCheck, Dataset, StorageMode, ensure_utc, utcnow
from meterforge.sync.adapter import log_dataset, parse_dataset, serialize_dataset
from meterforge.sync.credentials import DEFAULT_FILE_PATH, CredentialManager, WebDAVCredentials
from meterforge.sync.errors import (
    AuthenticationFailedError,
    NetworkError,
    NotConfiguredError,
    ServerError,
    StorageError,
    StorageExhaustedError,
)
from meterforge.sync.retry import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY, retry_with_backoff
from meterforge.sync.webdav_client import WebDAVClient
from meterforge.sync.webdav_helpers import validate_file_path, validate_server_url

logger = logging.getLogger(__name__)


class WebDAVStatus(BaseModel):
    """Connection status shown in the settings screen."""

    connected: bool = False
    server_url: Optional[str] = None
    username: Optional[str] = None
    file_path: Optional[str] = None
    error: Optional[str] = None


def default_client_factory(credentials: WebDAVCredentials) -> WebDAVClient:
    return WebDAVClient(credentials.server_url, credentials.username, credentials.password)


class WebDAVAdapter:
    """Implementation of StorageAdapter for a WebDAV document."""

    mode = StorageMode.WEBDAV

    def __init__(
        self,
        credential_manager: CredentialManager,
        client_factory: Callable[[WebDAVCredentials], WebDAVClient] = default_client_factory,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        """
        Initialize WebDAV adapter.

        Args:
            credential_manager: Encrypted credential store
            client_factory: Builds a client for a credential set
            max_retries: Retries after the first failed save attempt
            retry_delay: Base backoff delay in seconds
        """
        self.credential_manager = credential_manager
        self.client_factory = client_factory
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.credentials: Optional[WebDAVCredentials] = None
        self.client: Optional[WebDAVClient] = None
        self._status: Optional[AdapterStatus] = None

    @property
    def file_path(self) -> str:
        return self.credentials.file_path if self.credentials else DEFAULT_FILE_PATH

    def get_name(self) -> str:
        if self.credentials:
            host = urlparse(self.credentials.server_url).hostname
            return f"WebDAV: {host}{self.credentials.file_path}"
        return "WebDAV (not configured)"

    async def can_use(self) -> bool:
        # Plain HTTP is available everywhere
        return True

    async def configure(
        self,
        server_url: str,
        username: str,
        password: str,
        file_path: str = DEFAULT_FILE_PATH,
    ) -> None:
        """
        Set up the connection and store the credentials encrypted.

        Raises:
            ValueError: If the URL or path is invalid
        """
        valid, error, clean_url = validate_server_url(server_url)
        if not valid:
            raise ValueError(error)
        valid, error, clean_path = validate_file_path(file_path)
        if not valid:
            raise ValueError(error)

        credentials = WebDAVCredentials(
            server_url=clean_url,
            username=username.strip(),
            password=password,
            file_path=clean_path,
        )
        await self._run(self.credential_manager.store, credentials)
        await self._use_credentials(credentials)
        self._status = None

    async def init(self) -> AdapterStatus:
        """Restore stored credentials and test the connection."""
        if self._status is not None and self._status.initialized and not self._status.connection_error:
            return self._status

        if self.credentials is None:
            stored = await self._run(self.credential_manager.retrieve)
            if stored is None:
                return AdapterStatus(initialized=False, configured=False)
            await self._use_credentials(stored)

        try:
            await self._test_connection()
            self._status = AdapterStatus(initialized=True, configured=True)
        except StorageError as e:
            logger.error(f"WebDAV connection test failed: {e}")
            self._status = AdapterStatus(initialized=True, configured=True, connection_error=e.message)
        return self._status

    async def load(self) -> Dataset:
        """Download the dataset; a missing document is an empty dataset."""
        dataset = await self._load_remote()
        if dataset is None:
            logger.info(f"WebDAVAdapter: {self.file_path} does not exist, starting with an empty dataset")
            return Dataset.empty(self.mode)
        return dataset

    async def save(self, dataset: Dataset) -> None:
        """Upload the dataset, retrying transient failures."""
        client = self._require_client()
        dataset.last_modified = utcnow()
        content = serialize_dataset(dataset, indent=2)

        async def attempt() -> None:
            await self._ensure_directory_exists()
            try:
                await client.put_file_contents(self.file_path, content, overwrite=True)
            except httpx.HTTPError as e:
                raise self._classify(e, "saving") from e

        await retry_with_backoff(
            attempt,
            is_retryable=lambda e: isinstance(e, StorageError) and e.retryable,
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            description="WebDAVAdapter save",
        )
        log_dataset("saved", self.get_name(), dataset)

    async def check_for_conflicts(self, local_last_modified: datetime) -> ConflictCheck:
        """
        Compare the remote copy with the local timestamp.

        A conflict exists iff the remote `lastModified` is strictly newer.
        Nothing is written.
        """
        if self.client is None:
            return ConflictCheck()

        remote = await self._load_remote()
        if remote is None:
            return ConflictCheck()

        has_conflict = remote.last_modified > ensure_utc(local_last_modified)
        return ConflictCheck(
            has_conflict=has_conflict,
            remote_modified=remote.last_modified,
            remote_data=remote if has_conflict else None,
        )

    async def clear_configuration(self) -> None:
        """Forget stored credentials and drop the client."""
        await self._run(self.credential_manager.clear)
        await self._close_client()
        self.credentials = None
        self._status = None

    async def get_status(self) -> WebDAVStatus:
        if self.client is None:
            return WebDAVStatus()

        try:
            await self._test_connection()
        except StorageError as e:
            return WebDAVStatus(
                server_url=self.credentials.server_url,
                username=self.credentials.username,
                error=e.message,
            )
        return WebDAVStatus(
            connected=True,
            server_url=self.credentials.server_url,
            username=self.credentials.username,
            file_path=self.credentials.file_path,
        )

    async def aclose(self) -> None:
        await self._close_client()

    async def _load_remote(self) -> Optional[Dataset]:
        """Download and parse the document, or None if it does not exist."""
        client = self._require_client()
        try:
            if not await client.exists(self.file_path):
                return None
            content = await client.get_file_contents(self.file_path)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise self._classify(e, "loading") from e
        except httpx.HTTPError as e:
            raise self._classify(e, "loading") from e

        dataset = parse_dataset(content, self.get_name())
        log_dataset("loaded", self.get_name(), dataset)
        return dataset

    async def _test_connection(self) -> None:
        """Check the account can reach the document path."""
        client = self._require_client()
        try:
            await client.exists(self.file_path)
        except httpx.HTTPError as e:
            raise self._classify(e, "connecting to") from e

    async def _ensure_directory_exists(self) -> None:
        directory = self.file_path.rsplit("/", 1)[0]
        if not directory:
            return

        try:
            if not await self.client.exists(directory):
                logger.info(f"WebDAVAdapter: creating directory {directory}")
                await self.client.create_directory(directory, recursive=True)
        except httpx.HTTPError as e:
            # The upload that follows reports the specific failure
            logger.error(f"WebDAVAdapter: error creating directory {directory}: {e}")

    def _classify(self, error: httpx.HTTPError, action: str) -> StorageError:
        """Map an httpx error onto the storage error taxonomy."""
        backend = self.get_name()
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            if status in (401, 403):
                return AuthenticationFailedError(
                    "Authentication failed. Please check your credentials.", backend=backend
                )
            if status == 507:
                return StorageExhaustedError("Not enough storage space on the server.", backend=backend)
            return ServerError(
                f"Server error while {action} WebDAV document: HTTP {status}",
                backend=backend,
                status_code=status,
            )
        return NetworkError(f"Network error while {action} WebDAV server: {error}", backend=backend)

    def _require_client(self) -> WebDAVClient:
        if self.client is None:
            raise NotConfiguredError("WebDAV is not configured", backend=self.get_name())
        return self.client

    async def _use_credentials(self, credentials: WebDAVCredentials) -> None:
        await self._close_client()
        self.credentials = credentials
        self.client = self.client_factory(credentials)

    async def _close_client(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    async def _run(self, func, *args):
        """Run credential store calls (SQLite + key derivation) off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)
