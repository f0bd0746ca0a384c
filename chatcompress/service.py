"""HTTP client for a remote compaction endpoint."""

from __future__ import annotations

import logging

import httpx
from pydantic import ValidationError

from chatcompress.models import CompressionServiceRequest, CompressionServiceResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class CompressionServiceError(Exception):
    """Raised when the remote compaction endpoint fails.

    Attributes:
        status_code: HTTP status, or None when no response was received.
        status_text: HTTP reason phrase or error body, when available.
    """

    def __init__(self, message: str, status_code: int | None = None, status_text: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.status_text = status_text


async def fetch_compression_service(
    request: CompressionServiceRequest,
    *,
    api: str,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    headers: dict[str, str] | None = None,
) -> CompressionServiceResponse:
    """POST a compaction request and parse the response.

    Args:
        request: Transcript, pins, artifacts and budget to compact.
        api: Absolute URL of the endpoint.
        client: Client to reuse. A short-lived client is created when None.
        timeout: Request timeout in seconds for a created client.
        headers: Extra request headers.

    Returns:
        Validated service response.

    Raises:
        CompressionServiceError: On transport errors, non-2xx responses,
            unparsable JSON or an invalid response shape.
    """
    body = request.to_dict()
    request_headers = {"Content-Type": "application/json", **(headers or {})}

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=timeout) as owned_client:
                response = await owned_client.post(api, json=body, headers=request_headers)
        else:
            response = await client.post(api, json=body, headers=request_headers)
    except httpx.HTTPError as e:
        msg = f"Compression request failed: {e!s}"
        raise CompressionServiceError(msg) from e

    if response.is_error:
        status_text = response.reason_phrase or response.text[:500]
        msg = f"Compression request failed: {response.status_code} {status_text}".rstrip()
        raise CompressionServiceError(msg, response.status_code, status_text)

    try:
        data = response.json()
    except ValueError as e:
        msg = "Failed to parse compression response JSON"
        raise CompressionServiceError(msg, response.status_code) from e

    try:
        result = CompressionServiceResponse.model_validate(data)
    except ValidationError as e:
        msg = "Invalid compression response shape"
        raise CompressionServiceError(msg, response.status_code) from e

    logger.debug(f"Compression service returned snapshot {result.snapshot.id}")
    return result
