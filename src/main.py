import sys
import json
import argparse

from devotion.handler import today_json


def cline():
    parser = argparse.ArgumentParser(description="Print today's Duranno QT passage as JSON")
    parser.add_argument("--date", help="Date in YYYY-MM-DD format, or 'today' (UTC)", default="today")
    parser.add_argument("--compact", help="Single-line JSON output", default=False, action="store_true")
    return parser.parse_args()


def main(args):
    qt_date = None if args.date == "today" else args.date
    status, headers, body = today_json(qt_date)
    indent = None if args.compact else 2
    print(json.dumps(body, ensure_ascii=False, indent=indent))
    return 0 if status == 200 else 1


if __name__ == "__main__":
    sys.exit(main(cline()))
