"""Shared utilities for visualizer views."""

import json
from datetime import datetime
from typing import Any, Optional

from rich.markup import escape

OUTCOME_STYLES = {
	"applied": "green",
	"no-change": "cyan",
	"blocked-policy": "red",
	"needs-input": "yellow",
}


def format_ms(ms: int) -> str:
	"""Format milliseconds for display. e.g. '45ms', '1.2s', '2m 3s'."""
	if ms < 1000:
		return f"{ms}ms"
	seconds = ms / 1000
	if seconds < 60.0:
		return f"{seconds:.1f}s"
	minutes = int(seconds // 60)
	return f"{minutes}m {seconds % 60:.0f}s"


def format_timestamp(iso_str: str) -> str:
	"""Format an ISO timestamp as relative time (e.g. '2m ago') or absolute."""
	try:
		dt = datetime.fromisoformat(iso_str)
		total_secs = int((datetime.now() - dt).total_seconds())

		if total_secs < 0:
			return iso_str[:19]
		if total_secs < 60:
			return f"{total_secs}s ago"
		if total_secs < 3600:
			return f"{total_secs // 60}m ago"
		if total_secs < 86400:
			return f"{total_secs // 3600}h ago"
		return f"{total_secs // 86400}d ago"
	except (ValueError, TypeError):
		return str(iso_str)[:19]


def truncate(text: str, max_len: int = 60) -> str:
	"""Shorten text to one line for table display, escaping Rich markup."""
	if not text:
		return ""
	flat = " ".join(text.split())
	if len(flat) > max_len:
		flat = flat[:max_len - 3] + "..."
	return escape(flat)


def format_input(data: Optional[dict[str, Any]], max_len: int = 60) -> str:
	"""Compact one-line rendering of a tool input."""
	if not data:
		return ""
	return truncate(json.dumps(data, default=str), max_len)


def outcome_style(status: str) -> str:
	"""Return a Rich style string for an outcome status."""
	return OUTCOME_STYLES.get(status, "white")


def status_style(success: bool) -> str:
	return "green" if success else "red"


def status_text(success: bool) -> str:
	return "OK" if success else "FAIL"
