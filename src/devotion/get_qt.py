import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import requests
from bs4 import UnicodeDammit

# Candidate pages on Duranno, most specific first
URL_TEMPLATES = [
    "https://www.duranno.com/qt/view/bible.asp?qtDate={date}",
    "https://www.duranno.com/qt/view2/bible.asp?qtDate={date}",
]
FALLBACK_URL = "https://www.duranno.com/qt/view/bible.asp"

UA_DEFAULT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

# seconds
REQUEST_TIMEOUT = float(os.getenv("QT_REQUEST_TIMEOUT", "8"))
DEADLINE = float(os.getenv("QT_DEADLINE", "20"))
CHUNK_SIZE = 16384

HEADERS = {
    "User-Agent": os.getenv("QT_USER_AGENT", UA_DEFAULT),
    "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Referer": "https://www.duranno.com/qt/",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


@dataclass
class FetchResult:
    markup: str
    source_url: str
    status: int


class FetchExhausted(RuntimeError):
    """Every candidate URL failed; carries what the last attempt saw."""

    def __init__(self, last_status: Optional[int] = None, last_error: Optional[str] = None):
        self.last_status = last_status
        self.last_error = last_error
        if last_error:
            detail = last_error
        elif last_status is not None:
            detail = f"HTTP {last_status}"
        else:
            detail = "no candidate attempted"
        super().__init__(f"Failed to fetch QT page: {detail}")


def today_utc() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def build_urls(date_key: str) -> List[str]:
    return [tpl.format(date=date_key) for tpl in URL_TEMPLATES] + [FALLBACK_URL]


def _decode(resp: requests.Response, body: bytes) -> str:
    # requests reports ISO-8859-1 when no charset is sent; let bs4 sniff the <meta> instead
    if resp.encoding and resp.encoding.lower() != "iso-8859-1":
        try:
            return body.decode(resp.encoding, errors="replace")
        except LookupError:
            pass
    return UnicodeDammit(body, is_html=True).unicode_markup or ""


class _DeadlineExceeded(Exception):
    pass


def _get_page(sess: requests.Session, url: str, timeout: float, expires: float) -> Tuple[int, str]:
    """GET one candidate; the body is streamed so the deadline is checked between chunks."""
    with sess.get(url, headers=HEADERS, timeout=timeout, stream=True) as resp:
        if not 200 <= resp.status_code < 300:
            return resp.status_code, ""
        chunks = []
        for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
            if time.monotonic() > expires:
                raise _DeadlineExceeded()
            chunks.append(chunk)
        return resp.status_code, _decode(resp, b"".join(chunks))


def _try_candidates(
    sess: requests.Session,
    date_key: str,
    timeout: float,
    deadline: float,
) -> FetchResult:
    started = time.monotonic()
    expires = started + deadline
    last_status: Optional[int] = None
    last_error: Optional[str] = None

    # one worker, one request at a time; the caller only waits out the deadline
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="qt-fetch")
    try:
        for url in build_urls(date_key):
            remaining = expires - time.monotonic()
            if remaining <= 0:
                last_error = f"deadline of {deadline:g}s exceeded before {url}"
                print(f"[qt] ✗ {last_error}", file=sys.stderr)
                break

            future = pool.submit(_get_page, sess, url, min(timeout, remaining), expires)
            try:
                status, markup = future.result(timeout=remaining)
            except (FuturesTimeout, _DeadlineExceeded):
                last_error = f"deadline of {deadline:g}s exceeded while reading {url}"
                print(f"[qt] ✗ {last_error}", file=sys.stderr)
                break
            except requests.exceptions.RequestException as e:
                last_error = f"{url}: {e}"
                print(f"[qt] ✗ GET {url} failed: {e}", file=sys.stderr)
                continue

            if not 200 <= status < 300:
                last_status = status
                last_error = None
                print(f"[qt] ✗ GET {url} -> HTTP {status}", file=sys.stderr)
                continue

            print(f"[qt] ✓ GET {url} -> HTTP {status}", file=sys.stderr)
            return FetchResult(markup=markup, source_url=url, status=status)
    finally:
        pool.shutdown(wait=False)

    raise FetchExhausted(last_status=last_status, last_error=last_error)


def fetch_qt(
    date_key: Optional[str] = None,
    session: Optional[requests.Session] = None,
    timeout: float = REQUEST_TIMEOUT,
    deadline: float = DEADLINE,
) -> FetchResult:
    """
    Fetch the Duranno QT page for `date_key` (YYYY-MM-DD, default: today in UTC).

    Candidates from `build_urls` are tried one at a time, in order. The first
    2xx response is returned. Each request is bounded by `timeout` and all of
    them together by `deadline`, including time spent reading a slow body.
    A request still running when the deadline passes is abandoned and no
    further candidate is tried.

    Raises:
        FetchExhausted: no candidate answered with a success status.
    """
    date_key = date_key or today_utc()
    if session is not None:
        return _try_candidates(session, date_key, timeout, deadline)
    with requests.Session() as sess:
        return _try_candidates(sess, date_key, timeout, deadline)


if __name__ == "__main__":
    result = fetch_qt()
    print(result.source_url, len(result.markup))
