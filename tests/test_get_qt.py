import time

import pytest
import requests

from devotion import get_qt
from devotion.get_qt import (
    FALLBACK_URL,
    HEADERS,
    FetchExhausted,
    build_urls,
    fetch_qt,
)


class FakeResponse:
    def __init__(self, status_code, body="", encoding="utf-8", delay=0.0):
        self.status_code = status_code
        self.body = body.encode(encoding) if isinstance(body, str) else body
        self.encoding = encoding
        self.delay = delay
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            if self.delay:
                time.sleep(self.delay)
            yield self.body[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False


class DrippingResponse(FakeResponse):
    """Sends one byte per `delay` seconds, like a server stalling mid-body."""

    def iter_content(self, chunk_size=1):
        return super().iter_content(chunk_size=1)


class FakeSession:
    """Answers each URL from `routes`; an Exception value is raised instead."""

    def __init__(self, routes, on_get=None):
        self.routes = routes
        self.on_get = on_get
        self.headers = {}
        self.calls = []

    def get(self, url, headers=None, timeout=None, stream=False):
        self.calls.append((url, timeout, headers))
        if self.on_get:
            self.on_get()
        answer = self.routes.get(url, FakeResponse(404))
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def monotonic(self):
        return self.now


def _urls():
    return build_urls("2024-05-01")


def test_build_urls_dated_then_undated():
    assert _urls() == [
        "https://www.duranno.com/qt/view/bible.asp?qtDate=2024-05-01",
        "https://www.duranno.com/qt/view2/bible.asp?qtDate=2024-05-01",
        FALLBACK_URL,
    ]


def test_first_success_wins():
    first, second, _ = _urls()
    session = FakeSession({first: FakeResponse(404), second: FakeResponse(200, "<p>ok</p>")})

    result = fetch_qt("2024-05-01", session=session)

    assert result.markup == "<p>ok</p>"
    assert result.source_url == second
    assert result.status == 200
    assert [url for url, _, _ in session.calls] == [first, second]


def test_browser_headers_sent_per_request():
    session = FakeSession({_urls()[0]: FakeResponse(200, "x")})
    session.headers = {"X-Caller": "mine"}

    fetch_qt("2024-05-01", session=session)

    _, _, headers = session.calls[0]
    for name in ("User-Agent", "Accept-Language", "Accept", "Referer", "Cache-Control"):
        assert headers[name] == HEADERS[name]
    # the caller's session is left alone
    assert session.headers == {"X-Caller": "mine"}


def test_response_is_closed_after_reading():
    resp = FakeResponse(200, "x")
    fetch_qt("2024-05-01", session=FakeSession({_urls()[0]: resp}))

    assert resp.closed


def test_transport_error_moves_to_next_candidate():
    first, second, third = _urls()
    session = FakeSession({
        first: requests.exceptions.ConnectionError("refused"),
        second: requests.exceptions.Timeout("slow"),
        third: FakeResponse(200, "today"),
    })

    result = fetch_qt("2024-05-01", session=session)

    assert result.source_url == FALLBACK_URL
    assert len(session.calls) == 3


def test_all_candidates_fail_with_last_status():
    session = FakeSession({url: FakeResponse(503) for url in _urls()})

    with pytest.raises(FetchExhausted) as exc:
        fetch_qt("2024-05-01", session=session)

    assert exc.value.last_status == 503
    assert "HTTP 503" in str(exc.value)
    assert len(session.calls) == 3


def test_last_error_reflects_final_attempt():
    first, second, third = _urls()
    session = FakeSession({
        first: FakeResponse(404),
        second: FakeResponse(500),
        third: requests.exceptions.ConnectionError("reset by peer"),
    })

    with pytest.raises(FetchExhausted) as exc:
        fetch_qt("2024-05-01", session=session)

    assert "reset by peer" in str(exc.value)


def test_request_timeout_is_bounded():
    session = FakeSession({_urls()[0]: FakeResponse(200, "x")})
    fetch_qt("2024-05-01", session=session, timeout=5, deadline=20)

    _, timeout, _ = session.calls[0]
    assert 0 < timeout <= 5


def test_spent_deadline_stops_the_loop():
    session = FakeSession({})

    with pytest.raises(FetchExhausted) as exc:
        fetch_qt("2024-05-01", session=session, deadline=0)

    assert session.calls == []
    assert "deadline" in str(exc.value)


def test_later_timeouts_clipped_to_remaining_deadline(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(get_qt, "time", clock)

    def seven_seconds_pass():
        clock.now += 7

    session = FakeSession({url: FakeResponse(503) for url in _urls()}, on_get=seven_seconds_pass)

    with pytest.raises(FetchExhausted):
        fetch_qt("2024-05-01", session=session, timeout=8, deadline=20)

    assert [timeout for _, timeout, _ in session.calls] == [8, 8, 6]


def test_deadline_spent_partway_skips_remaining_candidates(monkeypatch):
    clock = FakeClock()
    monkeypatch.setattr(get_qt, "time", clock)

    def twelve_seconds_pass():
        clock.now += 12

    session = FakeSession({url: FakeResponse(503) for url in _urls()}, on_get=twelve_seconds_pass)

    with pytest.raises(FetchExhausted) as exc:
        fetch_qt("2024-05-01", session=session, timeout=8, deadline=20)

    assert [url for url, _, _ in session.calls] == _urls()[:2]
    assert "deadline" in str(exc.value)
    assert FALLBACK_URL in str(exc.value)


def test_slow_body_cannot_outlive_the_deadline():
    first, second, _ = _urls()
    session = FakeSession({
        first: DrippingResponse(200, "<p>abcdef</p>", delay=0.2),
        second: FakeResponse(200, "<p>never asked</p>"),
    })

    started = time.monotonic()
    with pytest.raises(FetchExhausted) as exc:
        fetch_qt("2024-05-01", session=session, timeout=5, deadline=0.5)
    took = time.monotonic() - started

    assert took < 1.5
    assert "deadline" in str(exc.value)
    assert [url for url, _, _ in session.calls] == [first]


def test_missing_charset_sniffs_meta_encoding():
    page = '<html><head><meta charset="euc-kr"></head><body><p>오늘의 본문</p></body></html>'
    resp = FakeResponse(200, page.encode("euc-kr"), encoding="ISO-8859-1")

    result = fetch_qt("2024-05-01", session=FakeSession({_urls()[0]: resp}))

    assert "오늘의 본문" in result.markup
