"""
HTTP transport for analytics bulk uploads.

One POST per batch to `{SYNC_API_BASE_URL}/analytics/batch`. Failures are
classified into the sync error taxonomy: timeouts, connection errors, 5xx
and 429 are transient; any other 4xx is a permanent batch rejection.
"""

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from heroes_analytics.core.config import Settings, settings as default_settings
from heroes_analytics.core.exceptions import TransientSyncFailure, PermanentSyncFailure
from heroes_analytics.schemas.sync import SyncBatchRequest, SyncBatchResponse

logger = logging.getLogger(__name__)

BATCH_UPLOAD_PATH = "/analytics/batch"


class SyncTransport:
    """Async HTTP client for the analytics ingestion endpoint."""

    def __init__(
        self,
        config: Settings = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.config = config or default_settings
        self._transport = transport
        self.http_client: Optional[httpx.AsyncClient] = None

    async def start(self):
        if self.http_client is not None:
            return

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"{self.config.APP_NAME}/{self.config.APP_VERSION}"
        }
        if self.config.SYNC_API_TOKEN:
            headers["Authorization"] = f"Bearer {self.config.SYNC_API_TOKEN}"

        self.http_client = httpx.AsyncClient(
            base_url=self.config.SYNC_API_BASE_URL,
            headers=headers,
            timeout=httpx.Timeout(self.config.SYNC_REQUEST_TIMEOUT),
            transport=self._transport
        )
        logger.info(f"Sync transport started ({self.config.SYNC_API_BASE_URL})")

    async def stop(self):
        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None
        logger.info("Sync transport stopped")

    async def upload_batch(self, request: SyncBatchRequest) -> SyncBatchResponse:
        """
        Send one batch and return the server's per-event outcome.

        Raises:
            TransientSyncFailure: timeout, connection error, 5xx, 429 or an
                unreadable success response
            PermanentSyncFailure: any other 4xx
        """
        if self.http_client is None:
            await self.start()

        try:
            response = await self.http_client.post(
                BATCH_UPLOAD_PATH,
                json=request.model_dump(mode="json", by_alias=True)
            )
        except httpx.TimeoutException as e:
            raise TransientSyncFailure(
                f"Upload of batch {request.batch_id} timed out", original_exception=e
            ) from e
        except httpx.TransportError as e:
            raise TransientSyncFailure(
                f"Upload of batch {request.batch_id} failed: {e.__class__.__name__}",
                original_exception=e
            ) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientSyncFailure(
                f"Server returned {status} for batch {request.batch_id}", status_code=status
            )
        if status >= 400:
            raise PermanentSyncFailure(
                f"Server rejected batch {request.batch_id} with {status}", status_code=status
            )

        try:
            return SyncBatchResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            # Ambiguous outcome: nothing is acknowledged, the batch is retried
            raise TransientSyncFailure(
                f"Unreadable response for batch {request.batch_id}",
                status_code=status,
                original_exception=e
            ) from e
