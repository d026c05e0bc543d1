#!/usr/bin/env python3
"""
Automation CLI: record, validate and run workflows, check cron
expressions, and run the scheduler loop from the shell.

Every command prints JSON to stdout. Errors print {"error", "code",
"command"} and exit with status 1.

Usage:
    python automation_cli.py record invoices https://app.example.com --base-domain example.com --visible
    python automation_cli.py validate invoices
    python automation_cli.py run workflows/invoices.yaml --var month=2025-01
    python automation_cli.py next-run "0 2 * * 1-5" --tz America/New_York --count 3
    python automation_cli.py validate-cron "61 * * * *"
    python automation_cli.py validate-schedules schedules.yaml
    python automation_cli.py scheduler --schedules-file schedules.yaml --workflows-dir workflows
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

import automation_config
from automation_errors import AutomationError
from login_orchestrator import LoginOrchestrator
from page_driver import BrowserManager
from persistence import JSONRecordStore
from schedule_loader import load_schedules, validate_schedules
from scheduler import Scheduler, upcoming_run_times, validate_cron_expression
from scope_guard import DomainScopeGuard
from selector_strategy import SelectorKind, SelectorOptions
from session_vault import SessionVault
from workflow_engine import RunOrchestrator
from workflow_models import DomainScopeConfig, LogicSpec, RunStatus, Schedule, Workflow
from workflow_recorder import CaptureEngine
from workflow_validator import ReplayValidator

logger = logging.getLogger(__name__)


def output_json(data):
    """Print JSON to stdout."""
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def load_workflow_file(file_path: str) -> Workflow:
    """Load a workflow definition from a YAML or JSON file."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Workflow file not found: {file_path}")
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError("Workflow file must contain a dictionary")
    return Workflow.model_validate(data)


def parse_vars(pairs) -> Dict[str, Any]:
    variables = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Variables must look like name=value, got: {pair}")
        variables[name] = value
    return variables


def build_engine(args, browser: BrowserManager):
    store = JSONRecordStore(args.data_dir)
    vault = SessionVault()
    sessions_file = Path(args.data_dir) / "sessions.json"
    vault.load(str(sessions_file))
    login = LoginOrchestrator(vault, browser.new_page)
    orchestrator = RunOrchestrator(page_factory=browser.new_page, record_store=store, login=login)
    return store, vault, sessions_file, login, orchestrator


# --- Commands ---


async def cmd_record(args):
    browser = BrowserManager(headless=args.headless)
    store = JSONRecordStore(args.data_dir)
    config = None
    if args.base_domain:
        config = DomainScopeConfig(base_domain=args.base_domain, allowed_domains=args.allow or [],
                                   auto_resume=not args.manual_resume)
    guard = DomainScopeGuard(config)

    def paused(result):
        sys.stderr.write(f"Paused: {result.host} is outside the target system\n")

    def resumed(result):
        sys.stderr.write(f"Resumed at {result.host}\n")

    try:
        page = await browser.new_page()
        engine = CaptureEngine(
            page,
            scope_guard=guard,
            record_store=store,
            selector_options=SelectorOptions(strategy=SelectorKind(args.strategy)),
            on_recording_paused=paused,
            on_recording_resumed=resumed,
            capture_network=args.network,
            capture_console=args.console,
        )
        await engine.start_capture(args.workflow_id, args.url)
        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            sys.stderr.write("Recording. Press Enter to stop.\n")
            await asyncio.to_thread(sys.stdin.readline)
        actions = await engine.stop_capture()
        await engine.cleanup()
        output_json({
            "workflow_id": args.workflow_id,
            "actions": [a.model_dump(mode="json") for a in actions],
            "domain_stats": guard.domain_stats(),
        })
    finally:
        await browser.close()


async def cmd_validate(args):
    browser = BrowserManager(headless=args.headless)
    store = JSONRecordStore(args.data_dir)
    try:
        page = await browser.new_page()
        validator = ReplayValidator(page, record_store=store, step_delay=args.delay)
        await validator.load(args.workflow_id)
        await validator.play_all()
        output_json(validator.summary())
    finally:
        await browser.close()


async def cmd_run(args):
    workflow = load_workflow_file(args.workflow_file)
    logic_spec = None
    if args.logic_spec:
        with open(args.logic_spec, 'r', encoding='utf-8') as f:
            logic_spec = LogicSpec.model_validate(yaml.safe_load(f))

    browser = BrowserManager(headless=args.headless)
    _, vault, sessions_file, login, orchestrator = build_engine(args, browser)
    try:
        run = await orchestrator.execute(workflow, variables=parse_vars(args.var), logic_spec=logic_spec)
        vault.save(str(sessions_file))
    finally:
        await login.cleanup()
        await browser.close()

    output_json(run.model_dump(mode="json"))
    if run.status is not RunStatus.SUCCESS:
        sys.exit(1)


async def cmd_next_run(args):
    times = upcoming_run_times(args.cron, args.tz, count=args.count)
    output_json({
        "cron_expression": args.cron,
        "timezone": args.tz,
        "next_run_time": times[0].isoformat() if times else None,
        "upcoming": [t.isoformat() for t in times],
    })


async def cmd_validate_cron(args):
    result = validate_cron_expression(args.cron)
    output_json({"cron_expression": args.cron, **result.to_dict()})
    if not result.is_valid:
        sys.exit(1)


async def cmd_validate_schedules(args):
    schedules = load_schedules(args.schedules_file)
    warnings = validate_schedules(schedules)
    for warning in warnings:
        logger.warning(warning)
    output_json({
        "schedules": [s.model_dump(mode="json") for s in schedules],
        "warnings": warnings,
    })


async def cmd_scheduler(args):
    browser = BrowserManager(headless=args.headless)
    store, vault, sessions_file, login, orchestrator = build_engine(args, browser)

    if args.schedules_file:
        for schedule in load_schedules(args.schedules_file):
            if store.get_schedule(schedule.id) is None:
                store.create_schedule(schedule)
            else:
                store.update_schedule(schedule.id, schedule.model_dump(mode="json"))

    workflows: Dict[str, Workflow] = {}
    if args.workflows_dir:
        for path in sorted(Path(args.workflows_dir).glob("*.y*ml")):
            workflow = load_workflow_file(str(path))
            workflows[workflow.id] = workflow
        logger.info(f"Loaded {len(workflows)} workflow definitions")

    async def fire(schedule: Schedule):
        workflow = workflows.get(schedule.workflow_id) or Workflow(
            id=schedule.workflow_id, start_url=schedule.run_config.get("start_url"))
        await orchestrator.start_run(workflow, variables=schedule.variables, trigger="schedule")

    scheduler = Scheduler(store, fire, poll_interval=args.interval)
    for row in scheduler.upcoming():
        logger.info(f"Schedule {row['schedule_id']} ({row['workflow_id']}) next at {row['next_run_time']}")

    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await orchestrator.shutdown()
        vault.save(str(sessions_file))
        await login.cleanup()
        await browser.close()


def main():
    parser = argparse.ArgumentParser(description="Browser Automation CLI")
    parser.add_argument("--data-dir", default=automation_config.DATA_DIR, help="Record store directory")
    parser.add_argument("--headless", action="store_true", default=automation_config.HEADLESS)
    parser.add_argument("--visible", action="store_true", help="Run with visible browser")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    # record
    p_rec = sub.add_parser("record", help="Record a workflow in a live browser")
    p_rec.add_argument("workflow_id")
    p_rec.add_argument("url")
    p_rec.add_argument("--base-domain", help="Restrict recording to this domain")
    p_rec.add_argument("--allow", action="append", help="Extra allowed domain (repeatable)")
    p_rec.add_argument("--manual-resume", action="store_true", help="Do not auto-resume after a scope pause")
    p_rec.add_argument("--strategy", default=SelectorKind.HYBRID.value,
                       choices=[k.value for k in SelectorKind])
    p_rec.add_argument("--duration", type=float, help="Stop after N seconds instead of waiting for Enter")
    p_rec.add_argument("--network", action="store_true", help="Attach network requests to actions")
    p_rec.add_argument("--console", action="store_true", help="Attach console messages to actions")

    # validate
    p_val = sub.add_parser("validate", help="Check recorded selectors against the live page")
    p_val.add_argument("workflow_id")
    p_val.add_argument("--delay", type=float, default=automation_config.PLAYBACK_STEP_DELAY)

    # run
    p_run = sub.add_parser("run", help="Execute a workflow definition file")
    p_run.add_argument("workflow_file")
    p_run.add_argument("--var", action="append", help="Variable as name=value (repeatable)")
    p_run.add_argument("--logic-spec", help="Compiled LogicSpec YAML/JSON file")

    # next-run
    p_next = sub.add_parser("next-run", help="Show upcoming fire times of a cron expression")
    p_next.add_argument("cron")
    p_next.add_argument("--tz", default="UTC")
    p_next.add_argument("--count", type=int, default=1)

    # validate-cron
    p_vc = sub.add_parser("validate-cron", help="Validate a 5-field cron expression")
    p_vc.add_argument("cron")

    # validate-schedules
    p_vs = sub.add_parser("validate-schedules", help="Load and check a schedules YAML file")
    p_vs.add_argument("schedules_file")

    # scheduler
    p_sched = sub.add_parser("scheduler", help="Run the scheduler loop until interrupted")
    p_sched.add_argument("--schedules-file", help="Import schedules from YAML before starting")
    p_sched.add_argument("--workflows-dir", help="Directory of workflow definition YAML files")
    p_sched.add_argument("--interval", type=float, default=automation_config.SCHEDULER_POLL_INTERVAL)

    args = parser.parse_args()

    if args.visible:
        args.headless = False

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        stream=sys.stderr,
    )

    commands = {
        "record": cmd_record,
        "validate": cmd_validate,
        "run": cmd_run,
        "next-run": cmd_next_run,
        "validate-cron": cmd_validate_cron,
        "validate-schedules": cmd_validate_schedules,
        "scheduler": cmd_scheduler,
    }

    try:
        asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except AutomationError as e:
        output_json({**e.to_dict(), "command": args.command})
        sys.exit(1)
    except Exception as e:
        output_json({"error": str(e), "command": args.command})
        sys.exit(1)


if __name__ == "__main__":
    main()
