"""CLI for theme-orchestrator: run, replay, transcripts and doctor commands."""

import argparse
import asyncio
import json
import platform
import sys
import tomllib
from importlib.metadata import version as pkg_version
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .config import Config, ConfigError, load_config
from .files import FileServiceError
from .logging_config import setup_logging

CORE_DEPS = ["pydantic", "aiosqlite", "rich", "platformdirs"]

# Outcome statuses that count as a successful run for the exit code
SUCCESS_STATUSES = ("applied", "no-change")


def _check_config_toml(config_dir: Path) -> tuple[str, Optional[str]]:
	"""Returns (status_line, issue_or_None) for config.toml."""
	toml_path = config_dir / "config.toml"
	if not toml_path.exists():
		return "not found (using defaults)", None
	try:
		with open(toml_path, "rb") as f:
			tomllib.load(f)
		return "valid", None
	except tomllib.TOMLDecodeError as e:
		return f"INVALID ({e})", f"config.toml parse error: {e}"


def _check_writable(path: Path) -> tuple[str, Optional[str]]:
	probe = path / ".doctor-probe"
	try:
		probe.write_text("ok")
		probe.unlink()
		return "writable", None
	except OSError as e:
		return f"NOT WRITABLE ({e})", f"{path} is not writable"


def _load_config_or_exit(args: argparse.Namespace) -> Config:
	"""Load config and configure logging from it."""
	try:
		config = load_config()
	except (ConfigError, tomllib.TOMLDecodeError) as e:
		print(f"Invalid configuration: {e}", file=sys.stderr)
		sys.exit(2)
	setup_logging(level=args.log_level or config.log_level, log_dir=config.log_dir)
	return config


# ── run ─────────────────────────────────────────────────────────────────


async def _run_scenario(args: argparse.Namespace, config: Config) -> str:
	"""Run one scenario. Returns the outcome status value."""
	from .files import DirectoryFileService, InMemoryFileService
	from .harness import load_scenario
	from .instrumentation import TranscriptRecorder, TranscriptStore
	from .orchestrator.conversation_arc import ConversationArc
	from .orchestrator.coordinator import Coordinator
	from .orchestrator.events import EventChannel, event_to_dict
	from .orchestrator.models import StrategyTier
	from .orchestrator.strategy import AccountPlan, StrategyBudgets, StrategySelector, classify_request
	from .orchestrator.transcript import structure_transcript
	from .providers import Usage
	from .visualizer.live import LiveEventPrinter

	scenario = load_scenario(args.scenario)
	provider = scenario.provider()

	if args.theme_dir:
		file_service = DirectoryFileService(args.theme_dir)
	else:
		file_service = InMemoryFileService(scenario.files)

	tier_name = args.tier or scenario.tier
	requested_tier = StrategyTier(tier_name.upper()) if tier_name else None
	complexity, source = await classify_request(scenario.request, provider)
	arc = ConversationArc()
	strategy = StrategySelector(StrategyBudgets.from_config(config)).select(
		complexity,
		plan=AccountPlan(args.plan or scenario.plan),
		requested_tier=requested_tier,
		escalation_factor=arc.escalation_factor(),
	)
	print(f"Scenario {scenario.name}: complexity {complexity.value} ({source}), strategy {strategy.tier.value}")

	plan_context = None
	if args.project:
		from .plans.store import get_plan_store
		store = await get_plan_store(str(config.plans_db_path))
		try:
			plan_context = await store.get_plan_context(args.project)
		finally:
			await store.close()

	channel = EventChannel()
	printer = LiveEventPrinter(channel, verbose=args.verbose)
	recorder = TranscriptRecorder(channel)
	coordinator = Coordinator.from_config(
		config,
		provider,
		file_service,
		strategy,
		channel=channel,
		arc=arc,
		plan_context=plan_context,
	)

	result, _, events = await asyncio.gather(
		coordinator.run(scenario.request),
		printer.run(),
		recorder.capture(),
	)

	if args.events_out:
		out = Path(args.events_out)
		out.parent.mkdir(parents=True, exist_ok=True)
		with open(out, "w", encoding="utf-8") as f:
			for event in events:
				f.write(json.dumps(event_to_dict(event)) + "\n")
		print(f"Wrote {len(events)} events to {out}")

	if args.record:
		m = result.metrics
		transcript = structure_transcript(
			events,
			run_id=result.run.id,
			scenario=scenario.name,
			elapsed_ms=m.elapsed_ms,
			usage=Usage(input_tokens=m.input_tokens, output_tokens=m.output_tokens, cost_cents=m.cost_cents),
		)
		TranscriptStore(str(config.transcripts_db_path)).record(transcript, tier=strategy.tier.value)
		print(f"Recorded transcript {result.run.id}")

	return result.outcome.status.value


def cmd_run(args: argparse.Namespace) -> None:
	"""Run a scripted scenario through the coordinator."""
	config = _load_config_or_exit(args)
	try:
		status = asyncio.run(_run_scenario(args, config))
	except (ValueError, FileNotFoundError, FileServiceError) as e:
		print(f"Cannot run scenario: {e}", file=sys.stderr)
		sys.exit(2)
	if status not in SUCCESS_STATUSES:
		sys.exit(1)


# ── replay ──────────────────────────────────────────────────────────────


def cmd_replay(args: argparse.Namespace) -> None:
	"""Structure a captured JSONL event stream and print the transcript as JSON."""
	from .orchestrator.events import event_from_dict
	from .orchestrator.transcript import structure_transcript

	setup_logging(level=args.log_level)
	path = Path(args.events)
	events = []
	try:
		with open(path, encoding="utf-8") as f:
			for lineno, line in enumerate(f, start=1):
				line = line.strip()
				if not line:
					continue
				data = json.loads(line)
				# Validate each line against the event contract
				event_from_dict(data)
				events.append(data)
	except FileNotFoundError:
		print(f"No such file: {path}", file=sys.stderr)
		sys.exit(2)
	except (json.JSONDecodeError, ValidationError) as e:
		print(f"{path}:{lineno}: not a valid event ({e})", file=sys.stderr)
		sys.exit(2)

	transcript = structure_transcript(
		events,
		run_id=args.run_id or path.stem,
		scenario=args.scenario or path.stem,
		elapsed_ms=args.elapsed_ms,
	)
	print(transcript.to_json())


# ── transcripts ─────────────────────────────────────────────────────────


def cmd_transcripts(args: argparse.Namespace) -> None:
	"""Rich views over recorded transcripts."""
	from .instrumentation import TranscriptStore
	from .visualizer.transcripts import render_outcome_stats, render_transcript, render_transcript_list

	config = _load_config_or_exit(args)
	store = TranscriptStore(str(config.transcripts_db_path))
	target = getattr(args, "transcripts_target", None)

	if target == "list":
		render_transcript_list(store, status=args.status, limit=args.limit)

	elif target == "show":
		transcript = store.get(args.run_id)
		if transcript is None:
			print(f"No transcript recorded for run '{args.run_id}'.")
			sys.exit(1)
		render_transcript(transcript)

	elif target == "stats":
		render_outcome_stats(store)

	elif target == "clear":
		deleted = store.clear(before=args.before)
		print(f"Deleted {deleted} transcript(s).")

	else:
		print("Usage: theme-orchestrator transcripts {list|show|stats|clear}")
		print("Run 'theme-orchestrator transcripts --help' for details.")
		sys.exit(1)


# ── doctor ──────────────────────────────────────────────────────────────


def cmd_doctor(args: argparse.Namespace) -> None:
	"""Health check - verify installation and configuration."""
	print("theme-orchestrator doctor")
	print(f"{'=' * 40}")

	issues: list[str] = []

	py_ver = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
	print(f"  Python:       {py_ver}")
	print(f"  Platform:     {platform.system()} {platform.machine()}")
	print()

	print("  Core deps:")
	for dep in CORE_DEPS:
		try:
			print(f"    {dep:22s} {pkg_version(dep)}")
		except Exception:
			print(f"    {dep:22s} NOT INSTALLED")
			issues.append(f"{dep} package not installed")
	print()

	try:
		config = load_config()
	except (ConfigError, tomllib.TOMLDecodeError) as e:
		print(f"  Config:       INVALID ({e})")
		print()
		print("  1 issue(s) found:")
		print(f"    - {e}")
		sys.exit(1)

	print("  Config:")
	toml_status, toml_issue = _check_config_toml(config.config_dir)
	print(f"    config.toml:         {toml_status}")
	if toml_issue:
		issues.append(toml_issue)
	data_status, data_issue = _check_writable(config.data_dir)
	print(f"    data dir:            {data_status} ({config.data_dir})")
	if data_issue:
		issues.append(data_issue)
	print()

	print("  Budgets:")
	print(f"    iterations:          simple {config.simple_max_iterations}, "
		f"hybrid {config.hybrid_max_iterations}, god mode {config.god_mode_max_iterations}")
	print(f"    specialist calls:    hybrid {config.hybrid_max_specialist_calls}, "
		f"god mode {config.god_mode_max_specialist_calls}")
	print(f"    validation retries:  {config.max_validation_retries}")
	for name, value in (("input tokens", config.max_input_tokens), ("cost (cents)", config.max_cost_cents)):
		print(f"    {name + ' ceiling:':21s}{value or 'disabled'}")
	print()

	if issues:
		print(f"  {len(issues)} issue(s) found:")
		for issue in issues:
			print(f"    - {issue}")
		sys.exit(1)
	else:
		print("  All checks passed.")


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="theme-orchestrator",
		description="Agent orchestration core for Shopify theme edits",
	)
	parser.add_argument("--log-level", type=str, default=None, help="Log level (default: config)")
	subparsers = parser.add_subparsers(dest="command")

	# run
	run_parser = subparsers.add_parser("run", help="Run a scripted scenario")
	run_parser.add_argument("scenario", help="Scenario JSON file")
	run_parser.add_argument("--theme-dir", type=str, default=None, help="Theme directory (default: scenario files in memory)")
	run_parser.add_argument("--tier", type=str, default=None, choices=["SIMPLE", "HYBRID", "GOD_MODE"], help="Request a strategy tier")
	run_parser.add_argument("--plan", type=str, default=None, choices=["starter", "pro", "agency"], help="Account plan")
	run_parser.add_argument("--project", type=str, default=None, help="Inject the project's active plan")
	run_parser.add_argument("--record", action="store_true", help="Record the transcript")
	run_parser.add_argument("--events-out", type=str, default=None, help="Write events as JSONL")
	run_parser.add_argument("-v", "--verbose", action="store_true", help="Show reasoning and text")
	run_parser.set_defaults(func=cmd_run)

	# replay
	replay_parser = subparsers.add_parser("replay", help="Structure a captured JSONL event stream")
	replay_parser.add_argument("events", help="JSONL file of events")
	replay_parser.add_argument("--run-id", type=str, default=None, help="Run ID (default: file stem)")
	replay_parser.add_argument("--scenario", type=str, default=None, help="Scenario label (default: file stem)")
	replay_parser.add_argument("--elapsed-ms", type=int, default=0, help="Run wall time")
	replay_parser.set_defaults(func=cmd_replay)

	# transcripts
	transcripts_parser = subparsers.add_parser("transcripts", help="Browse recorded transcripts")
	transcripts_sub = transcripts_parser.add_subparsers(dest="transcripts_target")

	t_list = transcripts_sub.add_parser("list", help="Recent runs")
	t_list.add_argument("--status", type=str, default=None, help="Filter by outcome status")
	t_list.add_argument("--limit", type=int, default=50, help="Max results")
	t_list.set_defaults(func=cmd_transcripts)

	t_show = transcripts_sub.add_parser("show", help="One run in detail")
	t_show.add_argument("run_id", help="Run ID")
	t_show.set_defaults(func=cmd_transcripts)

	t_stats = transcripts_sub.add_parser("stats", help="Stats per outcome status")
	t_stats.set_defaults(func=cmd_transcripts)

	t_clear = transcripts_sub.add_parser("clear", help="Delete recorded transcripts")
	t_clear.add_argument("--before", type=str, default=None, help="Only those recorded before this ISO timestamp")
	t_clear.set_defaults(func=cmd_transcripts)

	transcripts_parser.set_defaults(func=cmd_transcripts)

	# doctor
	doctor_parser = subparsers.add_parser("doctor", help="Health check")
	doctor_parser.set_defaults(func=cmd_doctor)

	return parser


def main(argv: Optional[list[str]] = None) -> None:
	"""CLI entry point."""
	parser = build_parser()
	args = parser.parse_args(argv)

	if not args.command:
		parser.print_help()
		sys.exit(1)

	args.func(args)


if __name__ == "__main__":
	main()
