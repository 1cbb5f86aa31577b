"""HTTP transport for the reconciliation server.

This module provides:
- SyncTransport: What the orchestrator needs from a transport
- HTTPTransport: httpx implementation of the sync endpoints
- Batch push, paginated pull, binary upload and health check

The transport classifies failures but never retries; retrying is the
orchestrator's job:
- timeouts, connection errors, 5xx, 408, 429, malformed bodies: NetworkError
- 400, 413, 422: ValidationError
- 401, 403: AuthenticationError
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx
import pydantic

from notesync.client.sync.retry import is_retryable_status
from notesync.client.sync.types import OutboxEntry, PullPage, PushResult, PushStatus
from notesync.client.sync.wire import (
    PullResponse,
    PushOperation,
    PushRequest,
    PushResponse,
)
from notesync.core.config import ServerConfig
from notesync.core.errors import AuthenticationError, NetworkError, ValidationError
from notesync.core.types import EntityType

logger = logging.getLogger(__name__)


class SyncTransport(Protocol):
    """Server operations used by a sync cycle."""

    def push(self, entries: Sequence[OutboxEntry]) -> list[PushResult]: ...

    def pull(self, since: float | None, limit: int) -> PullPage: ...


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return response.reason_phrase


class HTTPTransport:
    """HTTP client for the sync endpoints."""

    def __init__(self, config: ServerConfig, client: httpx.Client | None = None) -> None:
        """Initialize the transport.

        Args:
            config: Server URL, token and timeouts.
            client: Preconfigured httpx client (tests).
        """
        self._config = config
        self._client = client or httpx.Client(
            base_url=config.server_url,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={"Authorization": f"Bearer {config.token}"},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> HTTPTransport:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        """Send a request and classify failures."""
        try:
            response = self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as e:
            raise NetworkError(f"{method} {url} timed out: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Raise the error matching a failed response."""
        status = response.status_code
        if status < 400:
            return response
        detail = _detail(response)
        if status in (401, 403):
            raise AuthenticationError(f"Authentication refused ({status}): {detail}")
        if is_retryable_status(status):
            raise NetworkError(f"Server error ({status}): {detail}", status)
        if status in (400, 413, 422):
            raise ValidationError(f"Request rejected ({status}): {detail}")
        raise ValidationError(f"Unexpected response ({status}): {detail}")

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable and healthy.

        Returns:
            True if server is healthy.
        """
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.RequestError:
            return False

    # === Sync operations ===

    def push(self, entries: Sequence[OutboxEntry]) -> list[PushResult]:
        """Push a batch of outbox entries.

        Args:
            entries: Entries to push, in drain order.

        Returns:
            One result per entry, in submission order.

        Raises:
            NetworkError: Transient failure or malformed response.
            ValidationError: The batch was refused as a whole.
            AuthenticationError: Credentials refused.
        """
        if not entries:
            return []
        body = PushRequest(operations=[PushOperation.from_entry(e) for e in entries])
        response = self._request(
            "POST",
            "/sync/push",
            content=body.model_dump_json(),
            headers={"Content-Type": "application/json"},
        )
        try:
            parsed = PushResponse.model_validate_json(response.content)
        except pydantic.ValidationError as e:
            raise NetworkError(f"Malformed push response: {e}") from e

        if len(parsed.results) != len(entries):
            raise NetworkError(
                f"Malformed push response: {len(parsed.results)} results "
                f"for {len(entries)} operations"
            )

        results = [outcome.to_result() for outcome in parsed.results]
        for result in results:
            if result.status is PushStatus.APPLIED and result.new_version is None:
                raise NetworkError("Malformed push response: applied without new_version")
            if result.status is PushStatus.CONFLICT and result.server_version is None:
                raise NetworkError("Malformed push response: conflict without server_version")
        logger.debug("Pushed %d operations", len(entries))
        return results

    def pull(self, since: float | None, limit: int) -> PullPage:
        """Fetch server changes after a cursor.

        Args:
            since: Cursor from the previous page (None for everything).
            limit: Maximum records in the page.

        Returns:
            One page of changes.
        """
        params: dict[str, str | int | float] = {"limit": limit}
        if since is not None:
            params["since"] = since
        response = self._request("GET", "/sync/pull", params=params)
        try:
            parsed = PullResponse.model_validate_json(response.content)
        except pydantic.ValidationError as e:
            raise NetworkError(f"Malformed pull response: {e}") from e
        return PullPage(
            records=[record.to_record() for record in parsed.records],
            cursor=parsed.cursor,
            has_more=parsed.has_more,
        )

    def upload_binary(
        self,
        entity_type: EntityType | str,
        record_id: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> None:
        """Upload a binary attachment (e.g. capture audio).

        Uses the longer upload timeout.
        """
        etype = EntityType(entity_type)
        self._request(
            "PUT",
            f"/sync/uploads/{etype.value}/{record_id}",
            content=data,
            headers={"Content-Type": content_type},
            timeout=self._config.upload_timeout,
        )
        logger.debug("Uploaded %d bytes for %s:%s", len(data), etype.value, record_id)
