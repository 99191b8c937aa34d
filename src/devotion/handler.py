import json
import re
import sys
import time
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import requests

from devotion.extract import ExtractionEmpty, extract
from devotion.get_qt import FetchExhausted, fetch_qt, today_utc

# fresh at the edge for 30 min, then stale-while-revalidate for a day
CACHE_CONTROL = "s-maxage=1800, stale-while-revalidate=86400"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"
DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def _parse_qt_date(value: Any) -> str:
    qt_date = str(value or "").strip()
    if not qt_date:
        return today_utc()
    # strptime alone would also take 2024-5-1
    if not DATE_RE.fullmatch(qt_date):
        raise ValueError("qtDate must be 'YYYY-MM-DD'")
    try:
        parsed = datetime.strptime(qt_date, "%Y-%m-%d")
    except ValueError as e:
        raise ValueError("qtDate must be 'YYYY-MM-DD'") from e
    return parsed.date().isoformat()


def today_json(
    qt_date: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Tuple[int, Dict[str, str], Dict[str, Any]]:
    """
    Run fetch + extract for one day and shape the HTTP response.

    Returns (status, headers, body). Errors never escape: they become
    {"error": ...} bodies with status 400 (bad qtDate) or 500.
    """
    start = time.monotonic()

    def took_ms() -> int:
        return int((time.monotonic() - start) * 1000)

    def failure(status: int, message: str):
        headers = {"Content-Type": JSON_CONTENT_TYPE, "Cache-Control": "no-store"}
        return status, headers, {"error": message, "tookMs": took_ms()}

    try:
        date_key = _parse_qt_date(qt_date)
    except ValueError as e:
        return failure(400, str(e))

    try:
        fetched = fetch_qt(date_key, session=session)
        qt = extract(fetched.markup)
    except (FetchExhausted, ExtractionEmpty) as e:
        print(f"[qt] {date_key}: {e}", file=sys.stderr)
        return failure(500, str(e))
    except Exception as e:
        print(f"[qt] {date_key}: unexpected {type(e).__name__}: {e}", file=sys.stderr)
        return failure(500, f"Unexpected error: {e}")

    body = {**qt.to_dict(), "sourceUrl": fetched.source_url, "tookMs": took_ms()}
    headers = {"Content-Type": JSON_CONTENT_TYPE, "Cache-Control": CACHE_CONTROL}
    return 200, headers, body


def handler(event, context=None):
    """Serverless entry point for GET /today.json?qtDate=YYYY-MM-DD."""
    params = (event or {}).get("queryStringParameters") or {}
    status, headers, body = today_json(params.get("qtDate"))
    return {
        "statusCode": status,
        "headers": headers,
        "body": json.dumps(body, ensure_ascii=False),
    }
