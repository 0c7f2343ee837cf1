"""
Smoobu API Client
Fetches reservations for a date window from the Smoobu booking API
"""
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import ValidationError

from ..config import settings
from ..schemas.reservations import Reservation


logger = structlog.get_logger(__name__)


class SmoobuClient:
    """Client for the Smoobu reservations endpoint"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key or settings.smoobu_api_key
        self.base_url = (base_url or settings.smoobu_base_url).rstrip("/")
        self.timeout = timeout or settings.smoobu_timeout_seconds
        self._transport = transport

        if not self.api_key:
            raise ValueError("Smoobu API key is required")

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Api-Key": self.api_key,
            "Cache-Control": "no-cache",
        }

    def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make HTTP request to the Smoobu API; HTTP errors propagate as httpx.HTTPError"""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers()
        headers.update(kwargs.pop("headers", {}))

        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            response = client.request(method, url, headers=headers, **kwargs)
            response.raise_for_status()
            return response.json()

    def get_reservations(self, date_from: date, date_to: date) -> List[Reservation]:
        """
        Get all reservations departing or arriving inside the window.

        Args:
            date_from: First day of the window (inclusive)
            date_to: Last day of the window (inclusive)

        Returns:
            Reservations across every page of the response
        """
        reservations: List[Reservation] = []
        page = 1
        while True:
            params = {
                "from": date_from.isoformat(),
                "to": date_to.isoformat(),
                "excludeBlocked": "true",
                "page": page,
                "pageSize": settings.smoobu_page_size,
            }
            data = self._request("GET", "/api/reservations", params=params)
            if not isinstance(data, dict):
                break
            items = data.get("bookings") or data.get("reservations") or []
            for item in items:
                if not isinstance(item, dict) or item.get("id") is None:
                    continue
                try:
                    reservations.append(Reservation.model_validate(item))
                except ValidationError as exc:
                    logger.warning("smoobu_reservation_invalid", reservation_id=item.get("id"), error=str(exc))

            page_count = data.get("page_count") or data.get("pageCount") or 1
            try:
                page_count = int(page_count)
            except (TypeError, ValueError):
                page_count = 1
            if page >= page_count or not items:
                break
            page += 1

        logger.info("smoobu_reservations_fetched", count=len(reservations), pages=page)
        return reservations
