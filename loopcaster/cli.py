#!/usr/bin/env python3
"""
LoopCaster - command-line client for the control API.

Starts, stops and inspects streams on a running LoopCaster service.
"""

import argparse
import json
import sys
from typing import Dict, List, Optional, Tuple

import requests

DEFAULT_API_URL = "http://localhost:5000"


class StreamControl:
    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: float = 30):
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    def _call(self, method: str, path: str, **kwargs) -> Tuple[bool, Dict]:
        try:
            response = self.session.request(method, f"{self.api_url}{path}", timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            return False, {"message": f"API connection failed: {e}"}
        try:
            result = response.json()
        except ValueError:
            return False, {"message": f"Invalid JSON response (HTTP {response.status_code})"}
        return response.ok and bool(result.get('success')), result

    def test_connection(self) -> bool:
        ok, _ = self._call('GET', '/health')
        return ok

    def start(self, stream_id: str) -> Tuple[bool, Dict]:
        return self._call('POST', f"/streams/{stream_id}/start")

    def stop(self, stream_id: str) -> Tuple[bool, Dict]:
        return self._call('POST', f"/streams/{stream_id}/stop")

    def status(self, stream_id: str) -> Tuple[bool, Dict]:
        return self._call('GET', f"/streams/{stream_id}/status")

    def list_streams(self) -> Tuple[bool, Dict]:
        return self._call('GET', "/streams")

    def set_recurring(self, stream_id: str, enabled: bool) -> Tuple[bool, Dict]:
        return self._call('POST', f"/streams/{stream_id}/recurring", json={"enabled": enabled})

    def logs(self, stream_id: str, log_type: str = 'log', lines: int = 50) -> Tuple[bool, Dict]:
        return self._call('GET', f"/streams/{stream_id}/logs", params={"type": log_type, "lines": lines})


def _format_remaining(seconds: Optional[int]) -> str:
    if seconds is None:
        return "-"
    hours, rest = divmod(int(seconds), 3600)
    return f"{hours}:{rest // 60:02d}:{rest % 60:02d}"


def print_stream_table(streams: List[Dict]):
    header = f"{'ID':<20} {'STATUS':<10} {'STATE':<11} {'REMAINING':>9}  {'NEXT RUN':<25} ERROR"
    print(header)
    print("-" * len(header))
    for s in streams:
        print(f"{s['id']:<20} {s['status']:<10} {s['state']:<11} {_format_remaining(s.get('remaining_seconds')):>9}  "
              f"{s.get('next_run_at') or '-':<25} {s.get('last_error') or ''}")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Control streams on a LoopCaster service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  loopcaster-ctl list
  loopcaster-ctl start morning_show
  loopcaster-ctl logs morning_show --type err --lines 100
  loopcaster-ctl disable morning_show
        """
    )
    parser.add_argument("--api-url",
                        default=DEFAULT_API_URL,
                        help=f"LoopCaster API URL (default: {DEFAULT_API_URL})")
    parser.add_argument("--json",
                        action="store_true",
                        help="Print raw JSON responses")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("list", help="Show runtime status of every stream")
    for name, help_text in [("start", "Start a stream now"),
                            ("stop", "Stop a stream now"),
                            ("status", "Show runtime status of one stream"),
                            ("enable", "Enable a stream's recurring schedule"),
                            ("disable", "Disable a stream's recurring schedule")]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("stream_id")
    logs_parser = subparsers.add_parser("logs", help="Show the tail of a stream's logs")
    logs_parser.add_argument("stream_id")
    logs_parser.add_argument("--type", choices=["log", "out", "err"], default="log",
                             help="Wrapper log, FFmpeg stdout or FFmpeg stderr (default: log)")
    logs_parser.add_argument("--lines", type=int, default=50, help="Number of lines (default: 50)")

    args = parser.parse_args(argv)
    client = StreamControl(args.api_url)

    if args.command == "list":
        ok, result = client.list_streams()
    elif args.command == "start":
        ok, result = client.start(args.stream_id)
    elif args.command == "stop":
        ok, result = client.stop(args.stream_id)
    elif args.command == "status":
        ok, result = client.status(args.stream_id)
    elif args.command in ("enable", "disable"):
        ok, result = client.set_recurring(args.stream_id, args.command == "enable")
    else:
        ok, result = client.logs(args.stream_id, args.type, args.lines)

    if args.json:
        print(json.dumps(result, indent=2))
    elif not ok:
        print(f"❌ {result.get('message', 'Unknown error')}")
    elif args.command == "list":
        print_stream_table(result.get('streams', []))
    elif args.command == "logs":
        print("\n".join(result.get('lines', [])))
    else:
        if result.get('message'):
            print(f"✅ {result['message']}")
        stream = result.get('stream')
        if stream:
            print_stream_table([stream])

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
