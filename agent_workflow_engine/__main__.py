"""
Command line entry point.

    python -m agent_workflow_engine run "Translate 'hello' like a pirate" --yes
    python -m agent_workflow_engine recover --db workflows.db
"""

import argparse
import asyncio
import json
import logging
import sys

from .client import WorkerClient
from .config import EngineSettings, configure_logging, load_settings
from .engine import WorkflowEngine
from .errors import WorkflowError
from .parser import format_plan_for_display, format_workflow_result
from .recovery import RequestTracker
from .registry import InMemoryAgentRegistry
from .store import InMemoryWorkflowStore, SqliteWorkflowStore, WorkflowStore

logger = logging.getLogger(__name__)


class Color:
    BOLD = "\033[1m"
    CYAN = "\033[96m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    ENDC = "\033[0m"


def print_progress(event: str, data: dict) -> None:
    if event == "step_start":
        print(f"{Color.CYAN}[step {data['step']}] {data['message']}{Color.ENDC}")
    elif event == "step_complete":
        print(f"{Color.GREEN}[step {data['step']}] done{Color.ENDC}")
    elif event == "template_unresolved":
        print(f"{Color.YELLOW}[step {data['step']}] unresolved: {', '.join(data['placeholders'])}{Color.ENDC}")
    elif event == "agent_created":
        print(f"{Color.GREEN}Created agent {data['slug']}{Color.ENDC}")


def build_engine(args: argparse.Namespace) -> WorkflowEngine:
    settings = load_settings(args.settings) if args.settings else EngineSettings().apply_env()
    store: WorkflowStore = SqliteWorkflowStore(args.db) if args.db else InMemoryWorkflowStore()
    tracker = RequestTracker(settings.recovery.requests_dir, settings.recovery.max_request_age)
    return WorkflowEngine(
        settings,
        WorkerClient(settings, tracker=tracker),
        store,
        InMemoryAgentRegistry(),
        on_progress=print_progress,
    )


def ask(prompt: str) -> str:
    return input(f"{Color.BOLD}{prompt}{Color.ENDC} ").strip()


async def run(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    outcome = await engine.start_workflow(args.user, args.goal)
    workflow_id = outcome["workflow_id"]

    while outcome["status"] in ("needs_discovery", "needs_clarification"):
        print(outcome.get("message") or "")
        if outcome["status"] == "needs_discovery":
            answers = {}
            for question in outcome["questions"]:
                qid = question.get("id") or question.get("question")
                answers[qid] = ask(question.get("question") or str(qid))
            outcome = await engine.resume_workflow(workflow_id, answers)
        else:
            outcome = await engine.resume_workflow(workflow_id, ask(outcome["question"]))

    if outcome["status"] == "planned":
        print(format_plan_for_display(outcome["plan"]))
        if not args.yes and ask("Execute this plan? [y/N]").lower() not in ("y", "yes"):
            print("Plan not executed.")
            return 0
        outcome = await engine.execute_workflow(workflow_id)

    if outcome["status"] == "completed":
        print(f"\n{Color.BOLD}Result{Color.ENDC}")
        print(format_workflow_result(outcome))
        return 0

    print(f"{Color.RED}Workflow ended with status {outcome['status']}: {outcome.get('error')}{Color.ENDC}")
    return 1


async def recover(args: argparse.Namespace) -> int:
    engine = build_engine(args)
    report = await engine.client.tracker.recover()
    failed = await engine.recover_interrupted_workflows()
    print(
        json.dumps(
            {
                "active_requests": report.active,
                "cleaned_requests": report.cleaned,
                "killed_pids": report.killed,
                "corrupted_records": report.corrupted,
                "failed_workflows": failed,
            },
            indent=2,
        )
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="agent-workflow-engine")
    parser.add_argument("--settings", help="YAML settings file")
    parser.add_argument("--db", help="SQLite database for workflow state (in-memory when omitted)")
    parser.add_argument("--log-level", help="Overrides LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Plan and execute a goal")
    run_parser.add_argument("goal")
    run_parser.add_argument("--user", default="cli-user")
    run_parser.add_argument("--yes", action="store_true", help="Execute the plan without asking")

    commands.add_parser(
        "recover", help="Clean up worker requests and executing workflows left by an interrupted run"
    )

    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    handler = run if args.command == "run" else recover
    try:
        return asyncio.run(handler(args))
    except WorkflowError as e:
        print(f"{Color.RED}{WorkflowEngine.user_message_for(e)}{Color.ENDC}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
