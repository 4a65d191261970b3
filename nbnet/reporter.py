"""Summarise an Autobahn test-suite report, or serve the report pages over HTTP."""

from __future__ import annotations

import argparse
import functools
import json
import os
import re
import sys
from dataclasses import dataclass
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Sequence, TextIO
from urllib.parse import urlsplit

from nbnet import log

STATUS_OK = "OK"
STATUS_INFORMATIONAL = "INFORMATIONAL"
STATUS_UNIMPLEMENTED = "UNIMPLEMENTED"
STATUS_NON_STRICT = "NON-STRICT"
STATUS_UNCLEAN = "UNCLEAN"
STATUS_FAILED = "FAILED"

INDEX_PAGE = """
<html>
<body>
<h1>Welcome to WebSocket test server!</h1>
<h4>Ready to Autobahn!</h4>
<a href="/report">Reports</a>
</body>
</html>
"""

_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1


def failing(behavior: str) -> bool:
    """Whether a case behaviour counts as a failure."""
    return behavior in (STATUS_UNCLEAN, STATUS_FAILED)


@dataclass
class StatusCounter:
    """Counts of case results by status."""

    total: int = 0
    ok: int = 0
    informational: int = 0
    unimplemented: int = 0
    non_strict: int = 0
    unclean: int = 0
    failed: int = 0

    def inc(self, status: str) -> None:
        """Count one result; an unknown status raises ValueError."""
        fields = {
            STATUS_OK: "ok",
            STATUS_INFORMATIONAL: "informational",
            STATUS_NON_STRICT: "non_strict",
            STATUS_UNIMPLEMENTED: "unimplemented",
            STATUS_UNCLEAN: "unclean",
            STATUS_FAILED: "failed",
        }
        self.total += 1
        name = fields.get(status)
        if name is None:
            raise ValueError(f"unexpected status {_quote(status)}")
        setattr(self, name, getattr(self, name) + 1)


def _must_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid syntax: {_quote(text)}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"value out of range: {_quote(text)}")
    return value


def compare_by_segment(a: str, b: str) -> int:
    """Compare dotted case ids numerically, segment by segment."""
    for x, y in zip(a.split("."), b.split(".")):
        ax, bx = _must_int(x), _must_int(y)
        if ax != bx:
            return ax - bx
    return len(b) - len(a)


def sort_by_segment(cases: List[str]) -> None:
    """Sort case ids in place with ``compare_by_segment``."""
    cases.sort(key=functools.cmp_to_key(compare_by_segment))


def _quote(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


class _TabWriter:
    """Aligns tab-separated cells into columns padded with spaces."""

    def __init__(self, out: TextIO, padding: int = 1) -> None:
        self._out = out
        self._padding = padding
        self._lines: List[List[str]] = [[]]
        self._cell: List[str] = []

    def write(self, text: str) -> int:
        for ch in text:
            if ch == "\t":
                self._end_cell()
            elif ch == "\n":
                self._end_cell()
                ncells = len(self._lines[-1])
                self._lines.append([])
                if ncells == 1:
                    self.flush()
            else:
                self._cell.append(ch)
        return len(text.encode())

    def _end_cell(self) -> None:
        self._lines[-1].append("".join(self._cell))
        self._cell = []

    def flush(self) -> None:
        if self._cell:
            self._end_cell()
        self._format(0, len(self._lines), [])
        self._lines = [[]]
        self._out.flush()

    def _format(self, line0: int, line1: int, widths: List[int]) -> None:
        column = len(widths)
        this = line0
        while this < line1:
            if column >= len(self._lines[this]) - 1:
                this += 1
                continue
            self._write_lines(line0, this, widths)
            line0 = this
            width = 0
            while this < line1:
                line = self._lines[this]
                if column >= len(line) - 1:
                    break
                width = max(width, len(line[column]) + self._padding)
                this += 1
            self._format(line0, this, widths + [width])
            line0 = this
        self._write_lines(line0, line1, widths)

    def _write_lines(self, line0: int, line1: int, widths: List[int]) -> None:
        for i in range(line0, line1):
            line = self._lines[i]
            parts = []
            for j, cell in enumerate(line):
                parts.append(cell)
                if j < len(widths):
                    parts.append(" " * (widths[j] - len(cell)))
            if i + 1 != len(self._lines):
                parts.append("\n")
            self._out.write("".join(parts))


def _decode_file(path: str) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _decode_report(path: str) -> Dict[str, Dict[str, Dict[str, Any]]]:
    report = _decode_file(path)
    if not isinstance(report, dict) or not all(
        isinstance(cases, dict) and all(isinstance(e, dict) for e in cases.values())
        for cases in report.values()
    ):
        raise ValueError(f"{path}: malformed report")
    return report


class _ReportHandler(SimpleHTTPRequestHandler):
    """Serves the index page and the report files below /report/."""

    def do_GET(self) -> None:
        if self._route(send_body=True):
            super().do_GET()

    def do_HEAD(self) -> None:
        if self._route(send_body=False):
            super().do_HEAD()

    def _route(self, send_body: bool) -> bool:
        path = urlsplit(self.path).path
        if path.startswith("/report/"):
            self.path = self.path[len("/report") :]
            return True
        if path == "/report":
            self.send_response(301)
            self.send_header("Location", "/report/")
            self.send_header("Content-Length", "0")
            self.end_headers()
            return False
        if path != "/":
            self.send_response(404)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return False
        body = INDEX_PAGE.encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if send_body:
            self.wfile.write(body)
        return False

    def log_message(self, format: str, *args: Any) -> None:
        log.debug("%s - %s", self.address_string(), format % args)


def _serve(addr: str, base: str) -> int:
    host, _, port = addr.rpartition(":")
    try:
        port_num = int(port)
    except ValueError:
        print(f"listen tcp {addr}: invalid port", file=sys.stderr)
        return 1
    handler = functools.partial(_ReportHandler, directory=base)
    try:
        with ThreadingHTTPServer((host, port_num), handler) as server:
            server.serve_forever()
    except OSError as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


def _summarise(report: Dict[str, Dict[str, Dict[str, Any]]], base: str, verbose: bool) -> int:
    out = sys.stderr
    tw = _TabWriter(out)
    failed = False
    for server in sorted(report):
        srv_failed = False
        hdr_written = False
        counter = StatusCounter()

        cases = list(report[server])
        sort_by_segment(cases)
        for case_id in cases:
            entry = report[server][case_id]
            behavior = str(entry.get("behavior", ""))
            result = _decode_file(os.path.join(base, str(entry.get("reportFile", ""))))
            if not isinstance(result, dict):
                raise ValueError(f"{case_id}: malformed case report")
            counter.inc(behavior)
            bad = failing(behavior)
            if bad:
                srv_failed = True
                failed = True
            if verbose or bad:
                if not hdr_written:
                    hdr_written = True
                    header = f"AGENT {_quote(server)}\n"
                    out.write(header)
                    tw.write("=" * (len(header.encode()) - 1) + "\n")
                tw.write(f"{server}\t{case_id}\t{behavior}\n")
            if bad:
                tw.write(f"\tdesc:\t{result.get('description', '')}\n")
                tw.write(f"\texp: \t{result.get('expectation', '')}\n")
                tw.write(f"\tact: \t{result.get('result', '')}\n")
        if hdr_written:
            tw.write("\n")
        status = STATUS_FAILED if srv_failed else STATUS_OK
        n = tw.write(f"AGENT {_quote(server)} SUMMARY ({status})\n")
        tw.write("=" * (n - 1) + "\n")

        tw.write(f"TOTAL:\t{counter.total}\n")
        tw.write(f"{STATUS_OK}:\t{counter.ok}\n")
        tw.write(f"{STATUS_INFORMATIONAL}:\t{counter.informational}\n")
        tw.write(f"{STATUS_UNIMPLEMENTED}:\t{counter.unimplemented}\n")
        tw.write(f"{STATUS_NON_STRICT}:\t{counter.non_strict}\n")
        tw.write(f"{STATUS_UNCLEAN}:\t{counter.unclean}\n")
        tw.write(f"{STATUS_FAILED}:\t{counter.failed}\n")
        tw.write("\n")
        tw.flush()

    tw.write(f"\n\nTEST {STATUS_FAILED if failed else STATUS_OK}\n\n")
    tw.flush()
    return 1 if failed else 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Print a summary of the report at the given path; return 1 if any case failed."""
    parser = argparse.ArgumentParser(prog="reporter")
    parser.add_argument("--verbose", action="store_true", help="be verbose")
    parser.add_argument("--http", default="", help="open web browser instead")
    parser.add_argument("report", nargs="?", default=None)
    args = parser.parse_args(argv)

    if not args.report:
        print(f"Usage: {parser.prog} [options] <report-path>", file=sys.stderr)
        return 1

    base = os.path.dirname(args.report) or "."

    if args.http:
        return _serve(args.http, base)

    try:
        report = _decode_report(args.report)
        return _summarise(report, base, args.verbose)
    except (OSError, json.JSONDecodeError) as exc:
        print(exc, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())