"""
Wiretap — listen in on the wire.

Two parts:
  1. WireLog: writes structured JSONL entries for every request redbox sends
     upstream, every response it gets back, and every error response
  2. live_tap(): reads the JSONL and renders a color-coded live view

Only active in debug mode. Auth header values never reach the file.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_REQUEST = "\033[96m"    # cyan
C_RESPONSE = "\033[93m"   # yellow
C_ERROR = "\033[91m"      # red
C_URL = "\033[95m"        # magenta
C_TIME = "\033[90m"       # gray
C_BORDER = "\033[90m"     # gray

KIND_COLORS = {
    "request": C_REQUEST,
    "response": C_RESPONSE,
    "error": C_ERROR,
}

KIND_ICONS = {
    "request": "▶",
    "response": "◀",
    "error": "✗",
}

SENSITIVE_HEADERS = {"authorization", "x-api-key"}

MAX_BODY_CHARS = 4000


def redact_headers(headers: dict, extra: tuple[str, ...] = ()) -> dict:
    sensitive = SENSITIVE_HEADERS | {h.lower() for h in extra if h}
    return {k: ("***" if k.lower() in sensitive else v) for k, v in (headers or {}).items()}


class WireLog:
    """
    Structured JSONL logger for the wire.
    Each line is one event:

        {"ts": "...", "kind": "request|response|error", "conv": "...",
         "url": "...", "status": 200, "headers": {...}, "body": "..."}
    """

    def __init__(self, log_path: str, sensitive_headers: tuple[str, ...] = ()):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.sensitive_headers = sensitive_headers
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        kind: str,
        url: str = "",
        body=None,
        headers: dict | None = None,
        status: int | None = None,
        conversation_id: str = "",
    ):
        """Write a wire log entry."""
        self._ensure_open()
        if body is not None and not isinstance(body, str):
            body = json.dumps(body, ensure_ascii=False)
        body = body or ""
        if len(body) > MAX_BODY_CHARS:
            body = body[:MAX_BODY_CHARS] + f"\n[... {len(body) - MAX_BODY_CHARS} chars truncated ...]"

        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "kind": kind,
            "conv": conversation_id[:16] if conversation_id else "",
            "url": url,
            "body": body,
        }
        if status is not None:
            entry["status"] = status
        if headers:
            entry["headers"] = redact_headers(headers, self.sensitive_headers)

        self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Format a single wire log entry for display."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    kind = entry.get("kind", "?")
    color = KIND_COLORS.get(kind, C_RESET)
    icon = KIND_ICONS.get(kind, "?")

    header = f"  {C_TIME}{time_str}{C_RESET} {color}{C_BOLD}{icon} {kind.upper()}{C_RESET}"
    if entry.get("status") is not None:
        header += f"  {color}[{entry['status']}]{C_RESET}"
    if entry.get("url"):
        header += f"  {C_URL}{entry['url']}{C_RESET}"
    if entry.get("conv"):
        header += f"  {C_DIM}conv:{entry['conv']}{C_RESET}"

    lines = [header]
    body = entry.get("body", "")
    if body:
        display = body if len(body) <= 500 else body[:500] + f"\n{C_DIM}[... truncated]{C_RESET}"
        for bline in display.split("\n")[:15]:
            lines.append(f"      {bline}")
    lines.append(f"  {C_BORDER}{'─' * 60}{C_RESET}")
    return "\n".join(lines)


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    kind_filter: str | None = None,
    raw: bool = False,
):
    """
    Live tail of the wire log.

    Args:
        log_path: Path to wire.jsonl. If None, reads from config.
        follow: If True, keep watching for new entries (tail -f behavior).
        last_n: Show this many recent entries before following.
        kind_filter: Only show entries of this kind (request/response/error).
        raw: Output raw JSONL instead of formatted.
    """
    if log_path is None:
        from redbox.config import get_config
        cfg = get_config()
        log_path = cfg.get("wiretap", {}).get("path", "./data/wire.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No wire log found at {wire_path}")
        print("     Enable engine.debug and send a request first")
        return

    if not raw:
        print(f"  ☎  Tapping into {wire_path}")
        print(f"  {C_BORDER}{'═' * 60}{C_RESET}")

    def show(line: str):
        line = line.strip()
        if not line:
            return
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            return
        if kind_filter and entry.get("kind") != kind_filter:
            return
        print(_format_entry(entry, raw=raw))

    with open(wire_path) as f:
        all_lines = f.readlines()
    for line in all_lines[max(0, len(all_lines) - last_n):]:
        show(line)

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new traffic... Ctrl+C to hang up]{C_RESET}\n")

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                show(line)
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[line disconnected]{C_RESET}")
