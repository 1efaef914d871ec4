"""Rich views for recorded transcripts."""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..instrumentation import TranscriptStore
from ..orchestrator.transcript import Transcript
from .utils import format_input, format_ms, format_timestamp, outcome_style, status_style, status_text, truncate


def render_transcript_list(
	store: TranscriptStore,
	console: Optional[Console] = None,
	status: Optional[str] = None,
	limit: int = 50,
) -> None:
	"""Render a table of recent runs."""
	console = console or Console()
	records = store.query(status=status, limit=limit)

	if not records:
		console.print("[dim]No transcripts recorded yet.[/dim]")
		return

	table = Table(title=f"Recorded Runs (last {len(records)})")
	table.add_column("Run", style="cyan")
	table.add_column("Scenario")
	table.add_column("Tier")
	table.add_column("Outcome")
	table.add_column("Files", justify="right")
	table.add_column("Tools", justify="right")
	table.add_column("Elapsed", justify="right")
	table.add_column("Recorded")

	for r in records:
		style = outcome_style(r.status)
		table.add_row(
			r.run_id,
			truncate(r.scenario, 40),
			r.tier,
			f"[{style}]{r.status}[/{style}]",
			str(r.changed_files),
			str(r.total_tool_calls),
			format_ms(r.elapsed_ms),
			format_timestamp(r.recorded_at),
		)

	console.print(table)


def render_outcome_stats(store: TranscriptStore, console: Optional[Console] = None) -> None:
	"""Render aggregate stats per outcome status."""
	console = console or Console()
	stats = store.get_stats()

	if not stats:
		console.print("[dim]No transcripts recorded yet.[/dim]")
		return

	total = sum(s.run_count for s in stats)
	table = Table(title=f"Outcomes across {total} runs")
	table.add_column("Outcome")
	table.add_column("Runs", justify="right")
	table.add_column("Share", justify="right")
	table.add_column("Avg Tools", justify="right")
	table.add_column("Avg Elapsed", justify="right")
	table.add_column("Cost (cents)", justify="right")
	table.add_column("Last")

	for s in stats:
		style = outcome_style(s.status)
		table.add_row(
			f"[{style}]{s.status}[/{style}]",
			str(s.run_count),
			f"{s.run_count / total * 100:.1f}%",
			f"{s.avg_tool_calls:.1f}",
			format_ms(int(s.avg_elapsed_ms or 0)),
			f"{s.total_cost_cents or 0:.2f}",
			format_timestamp(s.last_recorded),
		)

	console.print(table)


def render_transcript(transcript: Transcript, console: Optional[Console] = None) -> None:
	"""Render a detailed view of one transcript."""
	console = console or Console()
	outcome = transcript.outcome
	style = outcome_style(outcome.status.value)

	header = [
		f"[bold]Run:[/bold] {transcript.run_id}",
		f"[bold]Scenario:[/bold] {escape(transcript.scenario)}",
		f"[bold]Outcome:[/bold] [{style}]{outcome.status.value}[/{style}]  changed files: {outcome.changed_files}",
	]
	if outcome.change_summary:
		header.append(f"[bold]Summary:[/bold] {escape(outcome.change_summary)}")
	if outcome.failure_reason:
		header.append(f"[bold]Reason:[/bold] {escape(outcome.failure_reason)}")
	if outcome.suggested_action:
		header.append(f"[bold]Suggested:[/bold] {outcome.suggested_action}")
	console.print(Panel("\n".join(header), title="Transcript", border_style=style))

	if transcript.decisions:
		decisions = Table(title="Decisions")
		decisions.add_column("At", justify="right")
		decisions.add_column("Phase")
		decisions.add_column("Label", style="cyan")
		decisions.add_column("Detail")
		for d in transcript.decisions:
			decisions.add_row(format_ms(d.timestamp_ms), d.phase, d.label, truncate(d.detail or "", 70))
		console.print(decisions)

	if transcript.tool_sequence:
		tools = Table(title="Tool Sequence")
		tools.add_column("#", justify="right")
		tools.add_column("Agent")
		tools.add_column("Tool", style="cyan")
		tools.add_column("Kind")
		tools.add_column("Input")
		tools.add_column("Result")
		tools.add_column("Elapsed", justify="right")
		tools.add_column("Status", justify="center")
		for i, call in enumerate(transcript.tool_sequence, start=1):
			ok = not call.is_error
			tools.add_row(
				str(i),
				call.agent,
				call.name,
				call.kind.value,
				format_input(call.input, 40),
				truncate(call.result, 40),
				format_ms(call.elapsed_ms),
				f"[{status_style(ok)}]{status_text(ok)}[/{status_style(ok)}]",
			)
		console.print(tools)

	if outcome.validation_issues:
		issues = Table(title="Validation Issues")
		issues.add_column("Gate", style="cyan")
		issues.add_column("Kept", justify="center")
		issues.add_column("Errors")
		for issue in outcome.validation_issues:
			issues.add_row(issue.gate, "yes" if issue.changes_kept else "no", escape("\n".join(issue.errors)))
		console.print(issues)

	m = transcript.metrics
	console.print(
		f"[dim]Tools: {m.total_tool_calls} (edit {m.edit_tool_calls}, read {m.read_tool_calls}, "
		f"search {m.search_tool_calls})  |  Elapsed: {format_ms(m.elapsed_ms)}  |  "
		f"Tokens: {m.input_tokens} in / {m.output_tokens} out  |  Cost: {m.cost_cents:.2f}c[/dim]"
	)
