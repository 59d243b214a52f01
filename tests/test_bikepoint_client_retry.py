import json
import socket
import threading
import time

import httpx
import pytest
from prometheus_client import CollectorRegistry

from tflcycles_exporter.config.settings import BikePointSettings, RetrySettings
from tflcycles_exporter.core.deadline import FetchContext
from tflcycles_exporter.core.http import build_http_client
from tflcycles_exporter.ingestion.bikepoint import FeedFormatError
from tflcycles_exporter.ingestion.bikepoint_client import (
    BikePointClient,
    BikePointMetrics,
    FetchInterrupted,
    TransportFetchError,
    UpstreamStatusError,
    exponential_buckets,
)

FEED = [
    {
        "commonName": "Foo",
        "additionalProperties": [
            {"key": "NbDocks", "value": "5"},
            {"key": "NbEmptyDocks", "value": "1"},
            {"key": "NbStandardBikes", "value": "2"},
            {"key": "NbEBikes", "value": "1"},
        ],
    }
]


def _settings(**update) -> BikePointSettings:
    retry = RetrySettings(initial_delay_seconds=0.0, max_delay_seconds=0.0, jitter=0.0)
    return BikePointSettings(url="https://api.example.test/BikePoint", retry=retry).model_copy(update=update)


def _client(handler, registry, **update) -> BikePointClient:
    return BikePointClient(
        _settings(**update),
        metrics=BikePointMetrics.register(registry),
        http_client=build_http_client(transport=httpx.MockTransport(handler)),
    )


def _sample(registry, name):
    return registry.get_sample_value(name) or 0.0


def test_fetch_retries_once_after_503(caplog):
    registry = CollectorRegistry()
    responses = [httpx.Response(503, text="Service Unavailable"), httpx.Response(200, json=FEED)]

    def handler(request):
        return responses.pop(0)

    client = _client(handler, registry)
    with caplog.at_level("WARNING"):
        records = client.fetch(FetchContext.with_timeout(5))

    assert [r.station.name for r in records] == ["Foo"]
    assert records[0].station.docks == 5
    assert responses == []
    assert _sample(registry, "tflcycles_bikepoint_http_request_retries_total") == 1
    assert _sample(registry, "tflcycles_bikepoint_http_request_failures_total") == 1
    assert _sample(registry, "tflcycles_bikepoint_http_request_duration_seconds_count") == 2
    assert "got HTTP 503: Service Unavailable" in caplog.text
    assert "wait=" in caplog.text and "timeout=" in caplog.text


def test_fetch_404_is_permanent():
    registry = CollectorRegistry()
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, text="Not Found")

    client = _client(handler, registry)
    with pytest.raises(UpstreamStatusError) as excinfo:
        client.fetch(FetchContext.with_timeout(5))

    assert excinfo.value.status_code == 404
    assert excinfo.value.permanent is True
    assert len(calls) == 1
    assert _sample(registry, "tflcycles_bikepoint_http_request_retries_total") == 0
    assert _sample(registry, "tflcycles_bikepoint_http_request_failures_total") == 1
    assert _sample(registry, "tflcycles_bikepoint_http_request_duration_seconds_count") == 1


def test_fetch_non_200_success_code_is_a_fault():
    registry = CollectorRegistry()
    client = _client(lambda request: httpx.Response(204), registry)

    with pytest.raises(UpstreamStatusError) as excinfo:
        client.fetch(FetchContext.with_timeout(5))

    assert excinfo.value.status_code == 204


def test_fetch_retries_transport_errors_and_bad_payloads():
    registry = CollectorRegistry()
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        if calls["n"] == 2:
            raise httpx.ReadTimeout("timed out", request=request)
        if calls["n"] == 3:
            return httpx.Response(200, content=b'[{"commonName": "Foo", "additionalProp')
        return httpx.Response(200, content=json.dumps(FEED).encode("utf-8"))

    client = _client(handler, registry)
    records = client.fetch(FetchContext.with_timeout(5))

    assert len(records) == 1
    assert calls["n"] == 4
    assert _sample(registry, "tflcycles_bikepoint_http_request_retries_total") == 3
    assert _sample(registry, "tflcycles_bikepoint_http_request_failures_total") == 3


def test_fetch_gives_up_when_deadline_expires():
    registry = CollectorRegistry()
    retry = RetrySettings(initial_delay_seconds=0.01, max_delay_seconds=0.02, jitter=0.0)
    client = _client(lambda request: httpx.Response(502, text="Bad Gateway"), registry, retry=retry)

    with pytest.raises(FetchInterrupted) as excinfo:
        client.fetch(FetchContext.with_timeout(0.2))

    assert excinfo.value.reason == "deadline exceeded"
    assert isinstance(excinfo.value.last_error, UpstreamStatusError)
    assert excinfo.value.__cause__ is excinfo.value.last_error
    assert "got HTTP 502" in str(excinfo.value)
    retries = _sample(registry, "tflcycles_bikepoint_http_request_retries_total")
    assert retries >= 1
    assert _sample(registry, "tflcycles_bikepoint_http_request_failures_total") == retries


def test_fetch_does_not_start_when_context_already_done():
    registry = CollectorRegistry()
    calls = []
    client = _client(lambda request: calls.append(request) or httpx.Response(200, json=FEED), registry)

    ctx = FetchContext()
    ctx.cancel()
    with pytest.raises(FetchInterrupted) as excinfo:
        client.fetch(ctx)

    assert excinfo.value.reason == "cancelled"
    assert excinfo.value.last_error is None
    assert calls == []


def test_fetch_stops_after_cancellation():
    registry = CollectorRegistry()
    ctx = FetchContext()
    calls = []

    def handler(request):
        calls.append(request)
        ctx.cancel()
        return httpx.Response(500)

    client = _client(handler, registry)
    with pytest.raises(FetchInterrupted) as excinfo:
        client.fetch(ctx)

    assert excinfo.value.reason == "cancelled"
    assert isinstance(excinfo.value.last_error, UpstreamStatusError)
    assert len(calls) == 1


def test_attempt_timeout_is_bounded_by_context():
    registry = CollectorRegistry()
    seen = []

    def handler(request):
        seen.append(request.extensions["timeout"]["read"])
        return httpx.Response(200, json=FEED)

    client = _client(handler, registry, attempt_timeout_seconds=3.0)
    client.fetch(FetchContext())
    client.fetch(FetchContext.with_timeout(1.0))

    assert seen[0] == 3.0
    assert 0 < seen[1] <= 1.0


def test_request_carries_app_key_header_and_user_agent():
    registry = CollectorRegistry()
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    client = _client(handler, registry, app_key="secret", user_agent="tflcycles_exporter/test", no_cache=True)
    assert client.fetch(FetchContext.with_timeout(5)) == []

    request = seen[0]
    assert request.method == "GET"
    assert request.headers["app_key"] == "secret"
    assert request.headers["user-agent"] == "tflcycles_exporter/test"
    assert request.headers["cache-control"] == "no-cache"
    assert "app_key" not in request.url.params


def test_request_carries_app_key_query_parameter():
    registry = CollectorRegistry()
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    client = _client(handler, registry, app_key="secret", app_key_scheme="query")
    client.fetch(FetchContext.with_timeout(5))

    request = seen[0]
    assert request.url.params["app_key"] == "secret"
    assert "app_key" not in request.headers
    assert "cache-control" not in request.headers
    assert request.headers["user-agent"].startswith("tflcycles_exporter/")


def test_anonymous_request_has_no_app_key():
    registry = CollectorRegistry()
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    _client(handler, registry).fetch(FetchContext.with_timeout(5))

    assert "app_key" not in seen[0].headers
    assert str(seen[0].url) == "https://api.example.test/BikePoint"


def test_error_types():
    assert UpstreamStatusError(503).permanent is False
    assert UpstreamStatusError(429).permanent is True
    assert str(UpstreamStatusError(500)) == "got HTTP 500"
    assert issubclass(FeedFormatError, ValueError)


def test_exponential_buckets():
    buckets = exponential_buckets(0.2, 1.355, 10)
    assert len(buckets) == 10
    assert buckets[0] == 0.2
    assert 3.0 < buckets[-1] < 3.1
    with pytest.raises(ValueError):
        exponential_buckets(0, 2, 3)


def test_fetch_retries_deeply_nested_payload():
    registry = CollectorRegistry()
    responses = [httpx.Response(200, content=b"[" * 100000), httpx.Response(200, json=FEED)]
    client = _client(lambda request: responses.pop(0), registry)

    records = client.fetch(FetchContext.with_timeout(5))

    assert [r.station.name for r in records] == ["Foo"]
    assert _sample(registry, "tflcycles_bikepoint_http_request_retries_total") == 1


@pytest.fixture
def trickle_url():
    """A local HTTP server that sends a 10-byte JSON body one byte every 0.4s."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(8)
    listener.settimeout(0.05)
    stop = threading.Event()

    def respond(conn):
        with conn:
            try:
                conn.recv(65536)
                conn.sendall(
                    b"HTTP/1.1 200 OK\r\n"
                    b"Content-Type: application/json\r\n"
                    b"Content-Length: 10\r\n\r\n"
                )
                for byte in b"[        ]":
                    if stop.wait(0.4):
                        return
                    conn.sendall(bytes([byte]))
            except OSError:
                return

    def serve():
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=respond, args=(conn,), daemon=True).start()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{listener.getsockname()[1]}/BikePoint"
    stop.set()
    thread.join(timeout=1)
    listener.close()


def _live_client(url, registry, **update) -> BikePointClient:
    return BikePointClient(
        _settings(url=url, **update),
        metrics=BikePointMetrics.register(registry),
        # An explicit transport keeps environment proxies out of the way.
        http_client=build_http_client(transport=httpx.HTTPTransport()),
    )


def test_slow_body_is_cut_off_at_the_attempt_deadline(trickle_url):
    registry = CollectorRegistry()
    client = _live_client(trickle_url, registry, attempt_timeout_seconds=1.0)

    started = time.monotonic()
    with pytest.raises(FetchInterrupted) as excinfo:
        client.fetch(FetchContext.with_timeout(1.5))
    elapsed = time.monotonic() - started

    assert elapsed < 2.5
    assert excinfo.value.reason == "deadline exceeded"
    assert isinstance(excinfo.value.last_error, TransportFetchError)
    assert _sample(registry, "tflcycles_bikepoint_http_request_failures_total") >= 1


def test_cancellation_aborts_the_attempt_in_flight(trickle_url):
    registry = CollectorRegistry()
    client = _live_client(trickle_url, registry, attempt_timeout_seconds=3.0)
    ctx = FetchContext()

    timer = threading.Timer(0.2, ctx.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(FetchInterrupted) as excinfo:
            client.fetch(ctx)
    finally:
        timer.cancel()
    elapsed = time.monotonic() - started

    assert elapsed < 1.5
    assert excinfo.value.reason == "cancelled"
    assert "interrupted" in str(excinfo.value.last_error)
