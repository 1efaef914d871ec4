"""Live console rendering of a run's event stream."""

from typing import Optional

from rich.console import Console
from rich.markup import escape

from ..orchestrator.events import (
	Event,
	EventChannel,
	ExecutionOutcomeEvent,
	ReasoningEvent,
	TextChunkEvent,
	ThinkingEvent,
	ToolCallEvent,
	ToolResultEvent,
)
from .utils import format_input, format_ms, outcome_style, truncate


class LiveEventPrinter:
	"""
	Prints events as they arrive.

	Subscribes like any other consumer, so a slow terminal never holds up
	the coordinator.
	"""

	def __init__(self, channel: EventChannel, console: Optional[Console] = None, verbose: bool = False):
		self._subscription = channel.subscribe(replay=True)
		self.console = console or Console()
		self.verbose = verbose

	async def run(self) -> int:
		"""Print until the channel closes. Returns the number of events printed."""
		count = 0
		async for event in self._subscription:
			self.render(event)
			count += 1
		return count

	def render(self, event: Event) -> None:
		c = self.console
		if isinstance(event, ThinkingEvent):
			detail = f" [dim]{truncate(event.detail, 80)}[/dim]" if event.detail else ""
			c.print(f"[magenta]◆ {event.phase}[/magenta] {event.label}{detail}")
		elif isinstance(event, ReasoningEvent):
			if self.verbose:
				c.print(f"[dim]  ({event.agent}) {truncate(event.text, 100)}[/dim]")
		elif isinstance(event, ToolCallEvent):
			agent = f"[dim]{event.agent}[/dim] " if event.agent else ""
			c.print(f"  {agent}[cyan]→ {event.name}[/cyan] {format_input(event.input, 70)}")
		elif isinstance(event, ToolResultEvent):
			style = "red" if event.is_error else "green"
			elapsed = f" ({format_ms(event.elapsed_ms)})" if event.elapsed_ms is not None else ""
			c.print(f"  [{style}]← {truncate(event.content, 80)}[/{style}][dim]{elapsed}[/dim]")
		elif isinstance(event, TextChunkEvent):
			if self.verbose:
				c.print(escape(event.text))
		elif isinstance(event, ExecutionOutcomeEvent):
			style = outcome_style(event.outcome.value)
			c.print(f"\n[bold {style}]Outcome: {event.outcome.value}[/bold {style}]  changed files: {event.changed_files}")
			for text, label in (
				(event.change_summary, "Summary"),
				(event.failure_reason, "Reason"),
				(event.suggested_action, "Suggested"),
			):
				if text:
					c.print(f"  {label}: {escape(text)}")
			for issue in event.validation_issues or []:
				kept = "kept" if issue.changes_kept else "discarded"
				c.print(f"  [{style}]{issue.gate}[/{style}] ({kept}): {escape('; '.join(issue.errors))}")
