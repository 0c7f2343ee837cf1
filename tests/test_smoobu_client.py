from datetime import date

import httpx
import pytest

from cleanteam.config import settings
from cleanteam.services.smoobu_client import SmoobuClient


def _client(handler):
    return SmoobuClient(api_key="secret", base_url="https://smoobu.test", transport=httpx.MockTransport(handler))


def test_requires_api_key(monkeypatch):
    monkeypatch.setattr(settings, "smoobu_api_key", None)
    with pytest.raises(ValueError):
        SmoobuClient(api_key=None)


def test_fetches_every_page():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        page = int(request.url.params["page"])
        bookings = [{"id": page * 10 + i, "apartment": {"id": 7, "name": "Seaside"}, "departure": "2024-05-10"} for i in range(2)]
        return httpx.Response(200, json={"page_count": 2, "page": page, "bookings": bookings})

    reservations = _client(handler).get_reservations(date(2024, 5, 1), date(2024, 6, 30))

    assert [r.id for r in reservations] == [10, 11, 20, 21]
    assert len(seen) == 2
    assert seen[0].headers["Api-Key"] == "secret"
    assert seen[0].url.params["from"] == "2024-05-01"
    assert seen[0].url.params["to"] == "2024-06-30"
    assert seen[0].url.path == "/api/reservations"


def test_skips_items_without_id():
    def handler(request):
        return httpx.Response(200, json={"bookings": [{"departure": "2024-05-10"}, {"id": 1, "departure": "2024-05-10"}]})

    reservations = _client(handler).get_reservations(date(2024, 5, 1), date(2024, 5, 31))

    assert [r.id for r in reservations] == [1]


def test_http_error_propagates():
    def handler(request):
        return httpx.Response(401, json={"detail": "bad key"})

    with pytest.raises(httpx.HTTPStatusError):
        _client(handler).get_reservations(date(2024, 5, 1), date(2024, 5, 31))
