"""
Async Pinterest v5 API client.

Uses ``httpx`` to create pins and read pin analytics on behalf of a user
(bearer access token per call).  Error responses are mapped to
:class:`~pinscheduler.exceptions.PinterestAPIError`, and HTTP 429 to
:class:`~pinscheduler.exceptions.PinterestRateLimitError`.

Publishing is not retried here: job-level retries belong to the retry
policy.  Analytics reads are idempotent and are retried with backoff on
transport errors and rate limiting.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional

import httpx

from pinscheduler.exceptions import PinterestAPIError, PinterestRateLimitError
from pinscheduler.scheduling.models import PinPayload
from pinscheduler.utils import with_retry

logger = logging.getLogger(__name__)

ANALYTICS_METRIC_TYPES = ("IMPRESSION", "SAVE", "PIN_CLICK", "OUTBOUND_CLICK")


def _error_from_response(response: httpx.Response) -> PinterestAPIError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = body.get("message") or body.get("error") or response.reason_phrase
    code = body.get("code")
    error_cls = (
        PinterestRateLimitError if response.status_code == 429 else PinterestAPIError
    )
    return error_cls(
        f"Pinterest API error ({response.status_code}): {message}",
        status_code=response.status_code,
        code=code,
    )


def _json_body(
    response: httpx.Response, result_key: Optional[str] = None
) -> Dict[str, Any]:
    """Decode a 2xx body, rejecting non-JSON bodies and embedded error objects.

    A body with ``code`` is treated as an error unless it also carries
    ``result_key``.
    """
    try:
        data = response.json()
    except ValueError as exc:
        raise PinterestAPIError(
            "Pinterest returned a non-JSON response", status_code=response.status_code
        ) from exc

    if not isinstance(data, dict):
        raise PinterestAPIError("Pinterest returned an unexpected response body")

    has_result = result_key is not None and data.get(result_key)
    if data.get("error") or (data.get("code") and not has_result):
        error = data.get("error")
        message = (
            error.get("message") if isinstance(error, dict) else error
        ) or data.get("message") or "unknown error"
        raise PinterestAPIError(
            f"Pinterest API error: {message}",
            status_code=response.status_code,
            code=data.get("code"),
        )
    return data


class PinterestClient:
    """Async wrapper around the Pinterest v5 REST API.

    Args:
        base_url: API root.  Defaults to ``https://api.pinterest.com/v5``.
        timeout: Per-request timeout in seconds.
        transport: Optional ``httpx`` transport (tests use
            ``httpx.MockTransport``).

    Usage::

        client = PinterestClient()
        pin_id = await client.publish_pin(token, payload)
        raw = await client.get_pin_analytics(token, pin_id, start, end)
    """

    BASE_URL: str = "https://api.pinterest.com/v5"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _headers(access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish_pin(self, access_token: str, payload: PinPayload) -> str:
        """Create a pin.

        Args:
            access_token: OAuth access token of the publishing account.
            payload: Pin content.

        Returns:
            The id of the created pin.

        Raises:
            PinterestRateLimitError: On HTTP 429.
            PinterestAPIError: On any other HTTP error, transport failure,
                an error object in a 2xx body, or a missing pin id.
        """
        try:
            async with self._client() as client:
                response = await client.post(
                    "/pins",
                    headers=self._headers(access_token),
                    json=payload.to_pin_request(),
                )
        except httpx.HTTPError as exc:
            raise PinterestAPIError(f"Pinterest request failed: {exc}") from exc

        if response.is_error:
            raise _error_from_response(response)

        data = _json_body(response, result_key="id")
        pin_id = data.get("id")
        if not pin_id:
            raise PinterestAPIError("Pinterest response did not include a pin id")

        logger.info("[PINTEREST] Created pin %s on board %s", pin_id, payload.board_id)
        return str(pin_id)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    @with_retry(
        max_attempts=3,
        retryable_exceptions=(httpx.TransportError, PinterestRateLimitError),
        operation_name="pinterest.get_pin_analytics",
    )
    async def get_pin_analytics(
        self,
        access_token: str,
        pin_id: str,
        start_date: date,
        end_date: date,
    ) -> Dict[str, Any]:
        """Fetch raw analytics for a pin over ``[start_date, end_date]``.

        Returns:
            The decoded JSON response, normalized later by
            :func:`~pinscheduler.scheduling.metrics.normalize_metrics`.

        Raises:
            PinterestAPIError: On non-2xx responses, a non-JSON body or an
                error object in a 2xx body.
            RetryExhaustedError: When transport errors or rate limiting
                persist across all attempts.
        """
        async with self._client() as client:
            response = await client.get(
                f"/pins/{pin_id}/analytics",
                headers=self._headers(access_token),
                params={
                    "start_date": start_date.isoformat(),
                    "end_date": end_date.isoformat(),
                    "metric_types": ",".join(ANALYTICS_METRIC_TYPES),
                },
            )

        if response.is_error:
            raise _error_from_response(response)
        data = _json_body(response)

        logger.debug(
            "[PINTEREST] Analytics fetched for pin %s (%s..%s)",
            pin_id,
            start_date,
            end_date,
        )
        return data


__all__ = [
    "PinterestClient",
    "ANALYTICS_METRIC_TYPES",
]
