from __future__ import annotations

import http.client
import json
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from fluxfilter.services import bilibili_dispatcher as dispatcher_module
from fluxfilter.services.bilibili_dispatcher import (
    BilibiliDispatcher,
    HttpResponse,
    urllib_transport,
)
from fluxfilter.services.bilibili_errors import (
    AuthRequiredError,
    MalformedResponseError,
    TransportError,
    UpstreamBusinessError,
)
from fluxfilter.services.rate_gate import MinimumIntervalGate
from fluxfilter.telemetry import TelemetryClient
from tests.fakes import FakeClock, FakeTransport, business_error, ok

DispatcherFactory = Callable[..., BilibiliDispatcher]


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def test_consecutive_dispatches_are_spaced_by_min_interval(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", ok({}))
    dispatcher = make_dispatcher()

    for _ in range(3):
        dispatcher.dispatch("/x/a")

    sent_at = [request.sent_at for request in transport.requests]
    gaps = [later - earlier for earlier, later in zip(sent_at, sent_at[1:], strict=False)]
    assert len(gaps) == 2
    assert all(gap >= 0.5 - 1e-6 for gap in gaps)


def test_retryable_codes_back_off_exponentially_then_succeed(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    transport.add("/x/a", business_error(-352), business_error(-412), ok({"value": 1}))
    dispatcher = make_dispatcher()

    envelope = dispatcher.dispatch("/x/a")

    assert envelope.data == {"value": 1}
    assert len(transport.requests) == 3
    assert clock.sleeps == [1.0, 2.0]
    assert dispatcher.last_success_at == clock.now


def test_retry_budget_exhaustion_raises_last_code(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    transport.add("/x/a", business_error(-799, "request too frequent"))
    dispatcher = make_dispatcher()

    with pytest.raises(UpstreamBusinessError) as exc_info:
        dispatcher.dispatch("/x/a")

    assert exc_info.value.code == -799
    assert exc_info.value.upstream_message == "request too frequent"
    assert len(transport.requests) == 3
    assert clock.sleeps == [1.0, 2.0]
    assert dispatcher.last_success_at is None


def test_max_retries_setting_controls_attempt_count(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    transport.add("/x/a", business_error(-503))
    dispatcher = make_dispatcher(max_retries=3, retry_base_delay_seconds=0.25)

    with pytest.raises(UpstreamBusinessError):
        dispatcher.dispatch("/x/a")

    assert len(transport.requests) == 4
    # The first backoff is shorter than the interval, so the gate adds the remainder.
    assert clock.sleeps == [0.25, 0.25, 0.5, 1.0]


def test_non_retryable_code_is_attempted_once(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    transport.add("/x/a", business_error(-404, "not found"))
    dispatcher = make_dispatcher()

    with pytest.raises(UpstreamBusinessError) as exc_info:
        dispatcher.dispatch("/x/a")

    assert exc_info.value.code == -404
    assert len(transport.requests) == 1
    assert clock.sleeps == []


@pytest.mark.parametrize("code", [-101, -111])
def test_auth_required_codes_raise_immediately(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    code: int,
) -> None:
    transport.add("/x/a", business_error(code, "not logged in"))
    dispatcher = make_dispatcher()

    with pytest.raises(AuthRequiredError) as exc_info:
        dispatcher.dispatch("/x/a")

    assert exc_info.value.code == code
    assert len(transport.requests) == 1


def test_accept_codes_return_envelope(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", {"code": -101, "message": "not logged in", "data": {"isLogin": False}})
    dispatcher = make_dispatcher()

    envelope = dispatcher.dispatch("/x/a", accept_codes=(-101,))

    assert envelope.code == -101
    assert envelope.ok is False
    assert envelope.data == {"isLogin": False}


def test_non_retryable_dispatch_makes_single_attempt(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    transport.add("/x/a", business_error(-352))
    dispatcher = make_dispatcher()

    with pytest.raises(UpstreamBusinessError) as exc_info:
        dispatcher.dispatch("/x/a", retryable=False)

    assert exc_info.value.code == -352
    assert len(transport.requests) == 1
    assert clock.sleeps == []


def test_transport_failures_and_http_errors_are_retried(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    clock: FakeClock,
) -> None:
    transport.add(
        "/x/a",
        TransportError("connection reset"),
        HttpResponse(status_code=503, body="busy"),
        ok({"value": 2}),
    )
    dispatcher = make_dispatcher()

    envelope = dispatcher.dispatch("/x/a")

    assert envelope.data == {"value": 2}
    assert len(transport.requests) == 3
    assert clock.sleeps == [1.0, 2.0]


def test_transport_failure_exhaustion_raises_transport_error(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", HttpResponse(status_code=412, body=""))
    dispatcher = make_dispatcher()

    with pytest.raises(TransportError) as exc_info:
        dispatcher.dispatch("/x/a")

    assert exc_info.value.status_code == 412
    assert len(transport.requests) == 3


@pytest.mark.parametrize(
    "reply",
    [
        HttpResponse(status_code=200, body="<html>blocked</html>"),
        HttpResponse(status_code=200, body='{"data": {}}'),
        HttpResponse(status_code=200, body='{"code": "0", "data": {}}'),
        HttpResponse(status_code=200, body="[]"),
    ],
)
def test_malformed_responses_are_not_retried(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
    reply: HttpResponse,
) -> None:
    transport.add("/x/a", reply)
    dispatcher = make_dispatcher()

    with pytest.raises(MalformedResponseError):
        dispatcher.dispatch("/x/a")

    assert len(transport.requests) == 1


def test_envelope_accepts_msg_field(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", {"code": -400, "msg": "bad request"})
    dispatcher = make_dispatcher()

    with pytest.raises(UpstreamBusinessError) as exc_info:
        dispatcher.dispatch("/x/a")

    assert exc_info.value.upstream_message == "bad request"


def test_retries_keep_following_calls_spaced(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", TransportError("timed out"), ok({}))
    transport.add("/x/b", business_error(-352), ok({}))
    dispatcher = make_dispatcher(retry_base_delay_seconds=0.1)

    dispatcher.dispatch("/x/a")
    dispatcher.dispatch("/x/b")

    sent_at = [request.sent_at for request in transport.requests]
    assert len(sent_at) == 4
    gaps = [later - earlier for earlier, later in zip(sent_at, sent_at[1:], strict=False)]
    assert all(gap >= 0.5 - 1e-6 for gap in gaps)


def test_headers_include_credential_only_when_configured(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", ok({}))

    make_dispatcher().dispatch("/x/a")
    make_dispatcher(credential="SESSDATA=abc; bili_jct=def").dispatch("/x/a")

    anonymous, authenticated = transport.requests
    assert "Cookie" not in anonymous.headers
    assert anonymous.headers["Referer"] == "https://www.bilibili.com"
    assert anonymous.headers["User-Agent"].startswith("Mozilla/5.0")
    assert authenticated.headers["Cookie"] == "SESSDATA=abc; bili_jct=def"


def test_blank_credential_is_anonymous(make_dispatcher: DispatcherFactory) -> None:
    assert make_dispatcher(credential="   ").has_credential is False
    assert make_dispatcher(credential="SESSDATA=abc").has_credential is True


def test_unsigned_params_are_url_encoded(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", ok({}))
    dispatcher = make_dispatcher(base_url="https://api.example.test/")

    dispatcher.dispatch("/x/a", {"bvid": "BV1xx411c7mD", "flag": True, "keyword": "a b"})

    request = transport.requests[0]
    assert request.url.startswith("https://api.example.test/x/a?")
    assert request.query == {"bvid": ["BV1xx411c7mD"], "flag": ["true"], "keyword": ["a b"]}
    assert "w_rid" not in request.query


def test_fetch_json_uses_gate_and_normalizes_protocol_relative_urls(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/a", ok({}))
    transport.add("/bfs/subtitle/track.json", {"body": [{"from": 0, "to": 1, "content": "hi"}]})
    dispatcher = make_dispatcher()

    dispatcher.dispatch("/x/a")
    payload = dispatcher.fetch_json("//aisubtitle.hdslb.com/bfs/subtitle/track.json")

    assert payload == {"body": [{"from": 0, "to": 1, "content": "hi"}]}
    first, second = transport.requests
    assert second.url == "https://aisubtitle.hdslb.com/bfs/subtitle/track.json"
    assert second.sent_at - first.sent_at >= 0.5 - 1e-6


def test_fetch_json_rejects_invalid_json(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/bfs/subtitle/track.json", HttpResponse(status_code=200, body="not json"))
    dispatcher = make_dispatcher()

    with pytest.raises(MalformedResponseError):
        dispatcher.fetch_json("https://aisubtitle.hdslb.com/bfs/subtitle/track.json")


def test_dispatch_emits_retry_and_success_telemetry(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    sink = _CaptureSink()
    transport.add("/x/a", business_error(-352), ok({}))
    dispatcher = make_dispatcher(telemetry=TelemetryClient(enabled=True, sink=sink))

    dispatcher.dispatch("/x/a")

    event_names = [name for name, _ in sink.events]
    assert event_names == ["bilibili.dispatch.retry", "bilibili.dispatch.success"]
    retry_attributes = sink.events[0][1]
    assert retry_attributes["path"] == "/x/a"
    assert retry_attributes["delay_seconds"] == 1.0
    assert sink.events[1][1]["attempts"] == 2


def test_dispatch_emits_failure_telemetry_on_exhaustion(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    sink = _CaptureSink()
    transport.add("/x/a", business_error(-412))
    dispatcher = make_dispatcher(
        max_retries=1,
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )

    with pytest.raises(UpstreamBusinessError):
        dispatcher.dispatch("/x/a")

    failure = sink.events[-1]
    assert failure[0] == "bilibili.dispatch.failure"
    assert failure[1]["code"] == -412
    assert failure[1]["attempts"] == 2


def test_signed_call_exhaustion_drops_signing_keys(
    make_dispatcher: DispatcherFactory,
    transport: FakeTransport,
) -> None:
    transport.add("/x/space/wbi/acc/info", business_error(-352), business_error(-352), ok({}))
    dispatcher = make_dispatcher(max_retries=1)

    with pytest.raises(UpstreamBusinessError):
        dispatcher.dispatch("/x/space/wbi/acc/info", {"mid": 2}, signed=True)
    dispatcher.dispatch("/x/space/wbi/acc/info", {"mid": 2}, signed=True)

    assert len(transport.requests_for("/x/web-interface/nav")) == 2


class _WallClockTransport:
    """Thread-safe transport stamping each send with `time.monotonic()`."""

    def __init__(self, replies: dict[str, list[dict[str, Any]]]) -> None:
        self._lock = threading.Lock()
        self._replies = replies
        self.sends: list[tuple[str, float]] = []

    def __call__(
        self,
        url: str,
        headers: Mapping[str, str],
        timeout_seconds: float,
    ) -> HttpResponse:
        _ = (headers, timeout_seconds)
        path = url.rsplit("/", 1)[-1]
        with self._lock:
            self.sends.append((path, time.monotonic()))
            queue = self._replies[path]
            reply = queue.pop(0) if len(queue) > 1 else queue[0]
        return HttpResponse(status_code=200, body=json.dumps(reply))


def test_retry_waits_for_gate_after_concurrent_dispatch() -> None:
    interval = 0.2
    gate = MinimumIntervalGate(min_interval_seconds=interval)
    transport = _WallClockTransport(
        {"a": [business_error(-412), ok({})], "b": [ok({})]},
    )
    dispatcher = BilibiliDispatcher(
        gate=gate,
        transport=transport,
        retry_base_delay_seconds=0.1,
    )

    first = threading.Thread(target=dispatcher.dispatch, args=("/x/a",))
    second = threading.Thread(target=dispatcher.dispatch, args=("/x/b",))
    first.start()
    time.sleep(0.05)
    second.start()
    first.join()
    second.join()

    assert [path for path, _ in transport.sends].count("a") == 2
    sent_at = sorted(sent for _, sent in transport.sends)
    gaps = [later - earlier for earlier, later in zip(sent_at, sent_at[1:], strict=False)]
    assert len(gaps) == 2
    assert all(gap >= interval - 0.02 for gap in gaps)


class _TruncatedResponse:
    def __init__(self, body: bytes | Exception) -> None:
        self._body = body

    def __enter__(self) -> _TruncatedResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def getcode(self) -> int:
        return 200

    def read(self) -> bytes:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


def test_urllib_transport_maps_protocol_errors_to_transport_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        dispatcher_module,
        "urlopen",
        lambda request, timeout: _TruncatedResponse(http.client.IncompleteRead(b"{", 10)),
    )

    with pytest.raises(TransportError):
        urllib_transport("https://api.bilibili.com/x/a", {}, 1.0)


def test_truncated_body_is_retried_like_connection_failure(
    make_dispatcher: DispatcherFactory,
    clock: FakeClock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    replies: list[bytes | Exception] = [
        http.client.IncompleteRead(b"{", 10),
        b'{"code": 0, "message": "0", "data": {"value": 3}}',
    ]
    monkeypatch.setattr(
        dispatcher_module,
        "urlopen",
        lambda request, timeout: _TruncatedResponse(replies.pop(0)),
    )
    dispatcher = make_dispatcher(transport=urllib_transport)

    envelope = dispatcher.dispatch("/x/a")

    assert envelope.data == {"value": 3}
    assert replies == []
    assert clock.sleeps == [1.0]
