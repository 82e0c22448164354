"""
Cloud Storage Adapter.

A thin HTTP client for the MeterForge sync gateway, which keeps each
user's dataset in a remote key-value store.

Gateway routes
--------------
GET  /sync/download   – the stored dataset (empty defaults if absent)
POST /sync/upload     – replace the dataset, returns {success, metadata}
GET  /sync/metadata   – {lastUpdated, metersCount, readingsCount, size}

All routes require ``Authorization: Bearer <token>``. Obtaining the token
(OAuth authorization-code flow) is the job of the AuthProvider.
"""

import logging
from datetime import datetime
from typing import Any, Optional, Protocol

import httpx

from meterforge.models import AdapterStatus, Dataset, StorageMode, SyncMetadata, ensure_utc, utcnow
from meterforge.sync.adapter import dataset_from_document, log_dataset
from meterforge.sync.errors import (
    AuthenticationFailedError,
    NetworkError,
    InvalidFormatError,
    ServerError,
    StorageError,
)
from meterforge.sync.retry import DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY, retry_with_backoff

logger = logging.getLogger(__name__)


class AuthProvider(Protocol):
    """Supplies bearer tokens for the gateway."""

    def is_logged_in(self) -> bool:
        ...

    async def get_access_token(self) -> str:
        ...


class StaticTokenAuth:
    """AuthProvider for an already-issued access token."""

    def __init__(self, token: Optional[str]):
        self._token = token

    def is_logged_in(self) -> bool:
        return bool(self._token)

    async def get_access_token(self) -> str:
        if not self._token:
            raise AuthenticationFailedError("Not logged in", backend="cloud")
        return self._token


class CloudStorageAdapter:
    """Implementation of StorageAdapter for the sync gateway."""

    mode = StorageMode.CLOUD

    def __init__(
        self,
        api_base_url: str,
        auth: AuthProvider,
        timeout: float = 30.0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize cloud adapter.

        Args:
            api_base_url: Base URL of the gateway API (e.g. https://host/api)
            auth: Token provider
            timeout: Request timeout in seconds
            max_retries: Retries after the first failed request
            retry_delay: Base backoff delay in seconds
            transport: Custom httpx transport (used by tests)
        """
        self.api_base_url = api_base_url.rstrip("/")
        self.auth = auth
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            base_url=self.api_base_url,
            timeout=timeout,
            transport=transport,
        )
        self.last_metadata: Optional[SyncMetadata] = None

    def get_name(self) -> str:
        return "Cloud sync"

    def is_authenticated(self) -> bool:
        return self.auth.is_logged_in()

    async def can_use(self) -> bool:
        return self.is_authenticated()

    async def init(self) -> AdapterStatus:
        return AdapterStatus(initialized=True, configured=self.is_authenticated())

    async def load(self) -> Dataset:
        """Download the dataset from the gateway."""
        payload = await self._request("GET", "/sync/download", "downloading data")
        if not payload:
            return Dataset.empty(self.mode)

        dataset = dataset_from_document(payload, self.get_name())
        log_dataset("loaded", self.get_name(), dataset)
        return dataset

    async def save(self, dataset: Dataset) -> None:
        """Upload the full dataset."""
        dataset.last_modified = utcnow()
        result = await self._request(
            "POST", "/sync/upload", "uploading data", json=dataset.to_document()
        )
        if isinstance(result, dict) and result.get("metadata"):
            self.last_metadata = SyncMetadata.model_validate(result["metadata"])
        log_dataset("saved", self.get_name(), dataset)

    async def get_metadata(self) -> SyncMetadata:
        payload = await self._request("GET", "/sync/metadata", "fetching sync metadata")
        return SyncMetadata.model_validate(payload or {})

    async def has_newer_data(self, local_timestamp: datetime) -> bool:
        """Check whether the gateway holds data newer than the local copy."""
        metadata = await self.get_metadata()
        if not metadata.last_updated:
            return False
        local_ms = int(ensure_utc(local_timestamp).timestamp() * 1000)
        return metadata.last_updated > local_ms

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, action: str, **kwargs) -> Any:
        """Authenticated request with bounded retries on transient failures."""

        async def attempt() -> Any:
            token = await self.auth.get_access_token()
            try:
                response = await self._client.request(
                    method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise self._classify_status(e.response, action) from e
            except httpx.HTTPError as e:
                raise NetworkError(f"Network error while {action}: {e}", backend=self.get_name()) from e

            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                raise InvalidFormatError(f"Invalid response while {action}", backend=self.get_name()) from e

        return await retry_with_backoff(
            attempt,
            is_retryable=lambda e: isinstance(e, StorageError) and e.retryable,
            max_retries=self.max_retries,
            base_delay=self.retry_delay,
            description=f"CloudStorageAdapter {action}",
        )

    def _classify_status(self, response: httpx.Response, action: str) -> StorageError:
        status = response.status_code
        if status in (401, 403):
            return AuthenticationFailedError(
                "Cloud session expired. Please log in again.", backend=self.get_name()
            )

        message = f"HTTP {status}"
        try:
            body = response.json()
            if isinstance(body, dict) and body.get("message"):
                message = body["message"]
        except ValueError:
            pass
        return ServerError(f"Failed {action}: {message}", backend=self.get_name(), status_code=status)
