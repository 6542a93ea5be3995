import threading

import pytest
import requests

from placecache import config
from placecache.errors import NotFound, UpstreamTimeout, UpstreamUnavailable
from placecache.http import HttpClient, RequestMetrics
from placecache.places_client import PlacesClient, details_url


class FakeResponse:
    def __init__(self, payload, status_code=200, headers=None):
        self._payload = payload
        self.status_code = status_code
        self.headers = headers or {}

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses_by_url=None, sequence=None):
        self.responses_by_url = responses_by_url or {}
        self.sequence = list(sequence or [])
        self.calls = []
        self.headers_seen = []

    def _next(self, url):
        if self.sequence:
            outcome = self.sequence.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return FakeResponse(self.responses_by_url.get(url, {}))

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append(url)
        self.headers_seen.append(headers)
        return self._next(url)

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(url)
        self.headers_seen.append(headers)
        return self._next(url)


def make_http_client(responses_by_url=None, sequence=None, retry_max=1):
    client = HttpClient(
        api_key="dummy",
        timeout=1,
        retry_max=retry_max,
        backoff_base=0.0,
        backoff_max=0.0,
    )
    client.session = FakeSession(responses_by_url, sequence)
    return client


def test_network_counters_increment_with_mock_http():
    metrics = RequestMetrics()
    responses = {
        config.PLACES_NEARBY_SEARCH_URL: {"places": [{"id": "p1"}, {"displayName": "no id"}]},
        details_url("p1"): {"id": "p1", "displayName": {"text": "Bistro"}},
    }
    http_client = make_http_client(responses)
    places_client = PlacesClient(http_client, metrics)

    found = places_client.search_nearby(48.1486, 17.1077, 5000)
    details = places_client.fetch_details("p1")

    assert [p["id"] for p in found] == ["p1"]
    assert details["displayName"]["text"] == "Bistro"
    assert metrics.network_search == 1
    assert metrics.network_details == 1
    assert http_client.session.headers_seen[0]["X-Goog-FieldMask"] == config.PLACES_SEARCH_FIELD_MASK
    assert http_client.session.headers_seen[1]["X-Goog-FieldMask"] == config.PLACES_DETAILS_FIELD_MASK


def test_keyword_uses_text_search():
    http_client = make_http_client({config.PLACES_TEXT_SEARCH_URL: {"places": []}})
    PlacesClient(http_client).search_nearby(48.1, 17.1, 1000, keyword="ramen")
    assert http_client.session.calls == [config.PLACES_TEXT_SEARCH_URL]


def test_retry_on_503_then_success():
    http_client = make_http_client(
        sequence=[FakeResponse({}, status_code=503), FakeResponse({"places": []})],
        retry_max=3,
    )
    assert http_client.post_json(config.PLACES_NEARBY_SEARCH_URL, {}, "places.id") == {"places": []}
    assert len(http_client.session.calls) == 2


def test_exhausted_retries_raise_unavailable():
    http_client = make_http_client(
        sequence=[FakeResponse({}, status_code=429, headers={"Retry-After": "0"})] * 2,
        retry_max=2,
    )
    with pytest.raises(UpstreamUnavailable):
        http_client.post_json(config.PLACES_NEARBY_SEARCH_URL, {}, "places.id")


def test_timeout_is_distinct_and_not_retried():
    http_client = make_http_client(sequence=[requests.Timeout("slow")], retry_max=3)
    with pytest.raises(UpstreamTimeout):
        http_client.get_json(details_url("p1"), "id")
    assert len(http_client.session.calls) == 1


def test_connection_error_becomes_unavailable():
    http_client = make_http_client(sequence=[requests.ConnectionError("down")] * 2, retry_max=2)
    with pytest.raises(UpstreamUnavailable):
        http_client.get_json(details_url("p1"), "id")


def test_404_maps_to_not_found_with_place_id():
    http_client = make_http_client(sequence=[FakeResponse({}, status_code=404)])
    with pytest.raises(NotFound) as excinfo:
        PlacesClient(http_client).fetch_details("p404")
    assert excinfo.value.identity == "p404"


def test_non_json_body_is_unavailable():
    http_client = make_http_client(sequence=[FakeResponse(ValueError("not json"))])
    with pytest.raises(UpstreamUnavailable):
        http_client.get_json(details_url("p1"), "id")


def test_metrics_are_thread_safe():
    metrics = RequestMetrics()

    def _bump():
        for _ in range(500):
            metrics.inc_cache_hit("details")

    threads = [threading.Thread(target=_bump) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert metrics.snapshot()["cache_hits_details"] == 2000
    with pytest.raises(ValueError):
        metrics.inc_network("routes")
