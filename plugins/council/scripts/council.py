#!/usr/bin/env python3
"""
Agent Council Orchestrator

Consults several agent CLIs (Claude Code, Codex, Gemini) about one task in
parallel, each under its own role, and synthesizes their answers into a single
report with agreement, divergence and a unified recommendation.

Watch a run with: tail -f .council/live.log
"""
from __future__ import annotations

import argparse
import asyncio
import datetime as dt
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

SCRIPT_DIR = Path(__file__).resolve().parent

# Add script directory to path for relative imports (enables running from any directory)
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from config import CouncilSettings, RoleLibrary, load_config, load_task_request
from fanout import FanOutCoordinator
from models import (
    AgentDescriptor, AgentRequest, AgentResult, CompositionError, ConfigError, TaskRequest,
)
from process import build_command
from synthesis import render_markdown, synthesize
from utils import (
    ensure_secure_dir, read_text, save_json_atomic, set_live_log,
    utc_now_iso, write_live, write_text_atomic,
)

logger = logging.getLogger("council")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NO_CONSENSUS = 2  # no agent completed
EXIT_ABORTED = 130

# Shared roles/profiles live next to the plugin scripts
DEFAULT_CONFIG_DIR = (SCRIPT_DIR.parent / "config") if (SCRIPT_DIR.parent / "config").exists() else SCRIPT_DIR


def parse_timeout_overrides(values: List[str]) -> Dict[str, float]:
    """Parse repeated 'agent=seconds' options."""
    timeouts: Dict[str, float] = {}
    for value in values:
        agent, sep, secs = value.partition("=")
        if not sep or not agent.strip():
            raise ConfigError(f"Invalid --timeout '{value}': expected agent=seconds")
        try:
            timeouts[agent.strip()] = float(secs)
        except ValueError as e:
            raise ConfigError(f"Invalid --timeout '{value}': {secs!r} is not a number") from e
        if timeouts[agent.strip()] <= 0:
            raise ConfigError(f"Invalid --timeout '{value}': must be positive")
    return timeouts


def build_request(args: argparse.Namespace) -> TaskRequest:
    """Task request from --request, with command-line flags taking precedence."""
    if args.request:
        request = load_task_request(Path(args.request))
    else:
        request = TaskRequest(agents=[], task="")

    if args.task:
        request.task = args.task
    if args.task_file:
        task_path = Path(args.task_file)
        if not task_path.exists():
            raise ConfigError(f"Task file not found: {task_path}")
        request.task = read_text(task_path)
    if args.file:
        request.files = [Path(f) for f in args.file]
    if args.agent:
        request.agents = [AgentRequest.parse(a) for a in args.agent]
    if args.timeout:
        request.timeouts.update(parse_timeout_overrides(args.timeout))
    if args.deadline is not None:
        request.deadline = args.deadline

    if not request.agents:
        raise ConfigError("No agents requested (use --agent agent:role or a request file)")
    if not request.task.strip() and not request.files:
        raise ConfigError("No task given (use --task, --task-file or a request file)")
    return request


def print_plan(
    request: TaskRequest,
    descriptors: Dict[str, AgentDescriptor],
    roles: RoleLibrary,
    settings: CouncilSettings,
) -> None:
    """Show what a run would do, without spawning anything."""
    print("Council plan (dry run)")
    print(f"  max concurrency: {settings.max_concurrency or 'unbounded'}")
    print(f"  global deadline: {request.deadline or settings.global_deadline or 'none'}")
    for index, req in enumerate(request.agents):
        print(f"\n  [{index}] {req.label}")
        descriptor = descriptors.get(req.agent)
        if descriptor is None:
            print("      ! unknown agent (no descriptor configured)")
            continue
        try:
            roles.get(req.role)
            role_note = str(roles.path_for(req.role) or "inline")
        except CompositionError as e:
            role_note = f"! {e}"
        cmd = build_command(descriptor, Path("<workspace>"), "<role text>")
        print(f"      role:      {role_note}")
        print(f"      command:   {' '.join(cmd)}")
        print(f"      detection: {descriptor.detection_strategy} ({descriptor.output_format} output)")
        print(f"      timeout:   {request.timeout_for(req, descriptor):g}s, retry budget {descriptor.retry_budget}")
        print(f"      role via:  {'arguments' if descriptor.injects_role else 'prompt'}")


def prepare_run_dir(state_dir: Path, name: Optional[str]) -> Path:
    """Create <state_dir>/runs/<name> (0700) and point runs/latest at it."""
    ensure_secure_dir(state_dir)
    run_name = name or dt.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    run_dir = state_dir / "runs" / run_name
    ensure_secure_dir(run_dir)

    # Create/update runs/latest symlink for run discovery
    latest_link = state_dir / "runs" / "latest"
    if latest_link.is_symlink() or latest_link.exists():
        latest_link.unlink()
    latest_link.symlink_to(run_name)  # relative symlink within runs/
    return run_dir


def install_signal_handlers(coordinator: FanOutCoordinator) -> List[int]:
    """Route SIGINT/SIGTERM to coordinator.abort(). Returns the installed signals."""
    loop = asyncio.get_running_loop()
    installed = []

    def _on_signal(signame: str) -> None:
        logger.warning(f"Received {signame}, aborting running agents")
        coordinator.abort()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Cannot install handler for {sig.name}")
    return installed


def exit_code_for(results: List[AgentResult], aborted: bool) -> int:
    if aborted:
        return EXIT_ABORTED
    return EXIT_OK if any(r.succeeded for r in results) else EXIT_NO_CONSENSUS


async def run_council(args: argparse.Namespace) -> int:
    """Load configuration, run the council, write and print the report."""
    try:
        settings, descriptors = load_config(Path(args.config), args.profile, DEFAULT_CONFIG_DIR)
        request = build_request(args)
    except ConfigError as e:
        logger.error(str(e))
        return EXIT_ERROR

    if args.max_concurrency is not None:
        settings.max_concurrency = args.max_concurrency
    settings.stream = not args.no_stream
    roles = RoleLibrary(settings.state_dir, settings.global_dir)

    if args.dry_run:
        print_plan(request, descriptors, roles, settings)
        return EXIT_OK

    state_dir = settings.state_dir
    run_dir = prepare_run_dir(state_dir, args.name)
    settings.transcript_dir = run_dir

    # Open live log in run directory
    live_log_path = run_dir / "live.log"
    live_log_file = open(live_log_path, "a", encoding="utf-8")
    set_live_log(live_log_file)

    # Create/update symlink in state_dir root for easy access
    live_link = state_dir / "live.log"
    if live_link.is_symlink() or live_link.exists():
        live_link.unlink()
    live_link.symlink_to(live_log_path.relative_to(state_dir))

    write_live("=" * 60)
    write_live(f"AGENT COUNCIL - {run_dir.name}")
    write_live(f"Watch: tail -f {state_dir}/live.log")
    write_live("=" * 60)

    try:
        return await _run_council_in(request, descriptors, roles, settings, run_dir)
    finally:
        write_live("=" * 60)
        write_live("COUNCIL FINISHED")
        write_live("=" * 60)
        live_log_file.close()
        set_live_log(None)


async def _run_council_in(
    request: TaskRequest,
    descriptors: Dict[str, AgentDescriptor],
    roles: RoleLibrary,
    settings: CouncilSettings,
    run_dir: Path,
) -> int:
    started_at = utc_now_iso()
    labels = ", ".join(r.label for r in request.agents)
    logger.info(f"Consulting {len(request.agents)} agent(s): {labels}")
    write_live(f"Agents: {labels}")

    coordinator = FanOutCoordinator(descriptors, roles, settings)
    installed = install_signal_handlers(coordinator)
    try:
        results = await coordinator.run(request)
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    report = synthesize(results)
    markdown = render_markdown(report)
    save_json_atomic(run_dir / "report.json", {
        "run": run_dir.name,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "aborted": coordinator.aborted,
        "task": request.task,
        "files": [str(f) for f in request.files],
        **report.to_dict(),
    })
    write_text_atomic(run_dir / "report.md", markdown)

    verdict = "consensus" if report.consensus else f"{len(report.contributors)} of {len(results)} complete"
    write_live(f"Verdict: {verdict} (confidence {report.confidence or 'n/a'})")
    logger.info(f"Report written to {run_dir / 'report.md'}")
    print(markdown)
    return exit_code_for(results, coordinator.aborted)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Agent Council Orchestrator")
    ap.add_argument("--config", default="council.config.json", help="Config file path")
    ap.add_argument(
        "--name", "-n",
        help="Run name (creates .council/runs/<name>/). If not set, uses timestamp."
    )
    ap.add_argument(
        "--profile", "-p",
        help="Load profile (e.g., code-review, architecture)"
    )
    ap.add_argument("--request", "-r", help="Task request file (YAML or JSON)")
    ap.add_argument("--task", "-t", help="Task text")
    ap.add_argument("--task-file", help="Read the task text from a file")
    ap.add_argument(
        "--file", "-f", action="append", default=[],
        help="Reference file appended to the prompt (repeatable)"
    )
    ap.add_argument(
        "--agent", "-a", action="append", default=[],
        help="Agent to consult as agent:role, e.g. codex:security (repeatable)"
    )
    ap.add_argument(
        "--timeout", action="append", default=[],
        help="Per-agent timeout as agent=seconds (repeatable)"
    )
    ap.add_argument("--deadline", type=float, default=None, help="Global deadline in seconds")
    ap.add_argument(
        "--max-concurrency", type=int, default=None,
        help="Maximum agents running at once (0 = unbounded)"
    )
    ap.add_argument(
        "--dry-run", action="store_true",
        help="Print the invocation plan without spawning any agent"
    )
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    ap.add_argument(
        "--no-stream", action="store_true", help="Disable streaming agent output"
    )
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        return asyncio.run(run_council(args))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_ABORTED


if __name__ == "__main__":
    raise SystemExit(main())
