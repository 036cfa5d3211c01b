"""
Upstream status source
Fetches the current status of one reference code from the upstream status service

Transient failures (timeouts, connection problems, 5xx) are raised as StatusSourceError
so the batch processor can retry them; answers the upstream gave on purpose (not found,
malformed body) come back as snapshots carrying an error and are not retried.
"""
import httpx
from typing import Dict, Any, Optional, Protocol
from datetime import datetime
import logging

from pnr_tracker.models.schemas import StatusSnapshot
from pnr_tracker.utils.config import settings

logger = logging.getLogger(__name__)


class StatusSourceError(Exception):
    """Custom exception for upstream status errors"""
    pass


class StatusSource(Protocol):
    """Anything that can fetch a snapshot for a reference code"""

    async def fetch(self, reference_code: str) -> StatusSnapshot: ...


class HTTPStatusSource:
    """
    Status source talking JSON over HTTP
    Expects GET {base_url}/{code} -> {"from", "to", "date", "status", "isFlushed"}
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = (base_url or settings.STATUS_SOURCE_URL).rstrip("/")
        self.timeout = timeout or settings.STATUS_SOURCE_TIMEOUT
        self.transport = transport

        self.headers = {
            "Accept": "application/json",
            "User-Agent": f"{settings.APP_NAME}/{settings.APP_VERSION}"
        }

    async def fetch(self, reference_code: str) -> StatusSnapshot:
        """
        Fetch the current status for one reference code

        Args:
            reference_code: Ten-digit PNR

        Returns:
            StatusSnapshot (with error set for terminal upstream answers)

        Raises:
            StatusSourceError: for transient failures worth retrying
        """
        url = f"{self.base_url}/{reference_code}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, headers=self.headers)
        except httpx.TimeoutException:
            logger.error(f"Timeout fetching {reference_code}")
            raise StatusSourceError("Request timeout")
        except httpx.ConnectError as e:
            logger.error(f"Connection error fetching {reference_code}: {e}")
            raise StatusSourceError(f"Connection error: {e}")
        except httpx.HTTPError as e:
            logger.error(f"Network error fetching {reference_code}: {e}")
            raise StatusSourceError(f"Request failed: {e}")

        if response.status_code == 200:
            try:
                data = response.json()
            except ValueError as e:
                return StatusSnapshot.failed(reference_code, f"Error parsing response: {e}")
            return self._parse_status_response(data, reference_code)
        elif response.status_code == 404:
            return StatusSnapshot.failed(reference_code, "Reference code not found")
        elif response.status_code >= 500:
            raise StatusSourceError(f"HTTP {response.status_code}: upstream server error")
        else:
            return StatusSnapshot.failed(
                reference_code,
                f"Upstream rejected request with status {response.status_code}"
            )

    def _parse_status_response(self, data: Dict[str, Any], reference_code: str) -> StatusSnapshot:
        """
        Parse upstream JSON into a StatusSnapshot

        Args:
            data: Raw response body
            reference_code: Code that was requested

        Returns:
            StatusSnapshot
        """
        if not isinstance(data, dict):
            return StatusSnapshot.failed(reference_code, "Error parsing response: body is not an object")

        retired = bool(data.get("isFlushed") or data.get("retired"))
        status = data.get("status")

        if not status and not retired:
            return StatusSnapshot.failed(reference_code, "Error parsing response: status missing")

        return StatusSnapshot(
            reference_code=reference_code,
            origin=str(data.get("from") or ""),
            destination=str(data.get("to") or ""),
            travel_date=str(data.get("date") or ""),
            status=str(status or "Flushed"),
            retired=retired,
            fetched_at=datetime.utcnow()
        )

    async def test_connection(self) -> bool:
        """Test upstream connectivity"""
        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
                response = await client.get(self.base_url, headers=self.headers)
                return response.status_code < 500
        except httpx.HTTPError as e:
            logger.error(f"Status source connection test failed: {str(e)}")
            return False
