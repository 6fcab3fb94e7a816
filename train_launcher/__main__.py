"""Training launcher CLI.

Usage:
    python -m train_launcher manifest <job.yaml>
    python -m train_launcher invocation <job.yaml>
    python -m train_launcher submit <job.yaml>
    python -m train_launcher run <job.yaml> [--local] [--store]
    python -m train_launcher launch --plan <json> --outcome <path>
    python -m train_launcher serve
"""

from __future__ import annotations

import argparse
import asyncio
import os
import shlex
import sys
from pathlib import Path
from uuid import uuid4

import structlog

from train_launcher import config
from train_launcher.container import build_invocation, get_runtime
from train_launcher.errors import LaunchError
from train_launcher.job_store import JobStore
from train_launcher.launcher import launch_in_place
from train_launcher.logging_config import configure_logging
from train_launcher.manifest import build_manifest
from train_launcher.models import LaunchPlan
from train_launcher.orchestrator import JobOrchestrator
from train_launcher.scheduler import get_scheduler
from train_launcher.settings import get_settings

logger = structlog.get_logger(__name__)


def cmd_manifest(args) -> int:
    job = config.load_job_config(args.config)
    print(build_manifest(job.resources, job.scheduler).render(), end="")
    return 0


def cmd_invocation(args) -> int:
    job = config.load_job_config(args.config)
    invocation = build_invocation(
        job.container, get_runtime(job.runtime), job.client
    )
    print(invocation.command)
    return 0


def cmd_submit(args) -> int:
    path = Path(args.config).resolve()
    job = config.load_job_config(path)
    scheduler = get_scheduler(job.scheduler)
    manifest = build_manifest(job.resources, job.scheduler)
    body = shlex.join([sys.executable, "-m", "train_launcher", "run", str(path)])
    script = scheduler.render_script(manifest, body, job.submit_prologue)

    script_path = config.status_dir() / f"{path.stem}-{uuid4().hex[:8]}.sh"
    script_path.write_text(script, encoding="utf-8")
    logger.info("submit.script_written", path=str(script_path))
    print(asyncio.run(scheduler.submit(script_path)))
    return 0


async def _run(job, local: bool, use_store: bool) -> int:
    orchestrator = JobOrchestrator(
        get_scheduler(job.scheduler, local=local),
        get_runtime(job.runtime),
        client=job.client,
        store=JobStore() if use_store else None,
    )
    result = await orchestrator.run(job.resources, job.container, job.launch_plan())
    print(result.model_dump_json())
    return result.exit_code


def cmd_run(args) -> int:
    job = config.load_job_config(args.config)
    return asyncio.run(_run(job, args.local, args.store))


def cmd_launch(args) -> int:
    plan = LaunchPlan.model_validate_json(args.plan)
    return asyncio.run(launch_in_place(plan, Path(args.outcome)))


def cmd_serve(args) -> int:
    import uvicorn

    port = int(os.getenv("PORT", 8765))
    uvicorn.run("train_launcher.api:app", host=args.host, port=port, reload=False)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="train_launcher",
        description="Launch containerised training jobs on a batch cluster.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("manifest", help="Print the scheduler manifest for a job file")
    p.add_argument("config")
    p.set_defaults(func=cmd_manifest)

    p = sub.add_parser("invocation", help="Print the container command for a job file")
    p.add_argument("config")
    p.set_defaults(func=cmd_invocation)

    p = sub.add_parser("submit", help="Write a batch script and submit it")
    p.add_argument("config")
    p.set_defaults(func=cmd_submit)

    p = sub.add_parser("run", help="Run a job inside its allocation")
    p.add_argument("config")
    p.add_argument("--local", action="store_true", help="Skip the allocation check")
    p.add_argument("--store", action="store_true", help="Record the job in redis")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("launch", help="Start tracking server and client (in-container)")
    p.add_argument("--plan", required=True, help="LaunchPlan as JSON")
    p.add_argument("--outcome", required=True, help="Where to write the outcome JSON")
    p.set_defaults(func=cmd_launch)

    p = sub.add_parser("serve", help="Start the HTTP API")
    p.add_argument("--host", default="0.0.0.0")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    try:
        return args.func(args)
    except (FileNotFoundError, ValueError, LaunchError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
