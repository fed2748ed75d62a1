"""Operator command line.

Every command prints JSON on stdout and exits 0; failures print
``Error (<category>): <message>`` on stderr and exit 1.
"""

import argparse
import json
import logging
import sys

from flowmachine import config
from flowmachine.api.schemas import JobResponse
from flowmachine.core import prompt_queue
from flowmachine.core.exceptions import EntityNotFoundError, FlowMachineError
from flowmachine.core.runtime import Runtime, build_runtime
from flowmachine.db import repository
from flowmachine.db.database import SessionLocal, init_db


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flowmachine", description="Flow Machine operator CLI")
    groups = parser.add_subparsers(dest="group", required=True)

    batch = groups.add_parser("batch", help="Inspect and cancel batches")
    batch_cmds = batch.add_subparsers(dest="command", required=True)
    batch_list = batch_cmds.add_parser("list")
    batch_list.add_argument("--limit", type=int, default=20)
    batch_cmds.add_parser("status").add_argument("batch_id", type=int)
    batch_cmds.add_parser("cancel").add_argument("batch_id", type=int)

    jobs = groups.add_parser("jobs", help="Inspect and repair jobs")
    job_cmds = jobs.add_subparsers(dest="command", required=True)
    jobs_list = job_cmds.add_parser("list")
    jobs_list.add_argument("--status")
    jobs_list.add_argument("--flow", type=int)
    jobs_list.add_argument("--source")
    jobs_list.add_argument("--limit", type=int, default=20)
    job_cmds.add_parser("show").add_argument("job_id", type=int)
    fail = job_cmds.add_parser("fail")
    fail.add_argument("job_id", type=int)
    fail.add_argument("--reason", default="manual")
    retry = job_cmds.add_parser("retry")
    retry.add_argument("job_id", type=int)
    retry.add_argument("--force", action="store_true")
    recover = job_cmds.add_parser("recover-stuck")
    recover.add_argument("--dry-run", action="store_true")
    recover.add_argument("--flow", type=int)
    recover.add_argument("--timeout", type=float, default=config.STUCK_JOB_TIMEOUT_HOURS)
    job_cmds.add_parser("summary")

    flows = groups.add_parser("flows", help="Run flows and manage prompt queues")
    flow_cmds = flows.add_subparsers(dest="command", required=True)
    flow_cmds.add_parser("run").add_argument("flow_id", type=int)

    queue = flow_cmds.add_parser("queue")
    queue_cmds = queue.add_subparsers(dest="queue_command", required=True)
    for name in ("add", "list", "remove", "update", "move", "clear"):
        sub = queue_cmds.add_parser(name)
        sub.add_argument("flow_id", type=int)
        sub.add_argument("step_id")
        if name == "add":
            sub.add_argument("prompt")
        elif name == "remove":
            sub.add_argument("index", type=int)
        elif name == "update":
            sub.add_argument("index", type=int)
            sub.add_argument("prompt")
        elif name == "move":
            sub.add_argument("from_index", type=int)
            sub.add_argument("to_index", type=int)

    return parser


def _batch(args, db, runtime: Runtime):
    if args.command == "list":
        return runtime.batches.list_batches(db, args.limit)
    if args.command == "status":
        status = runtime.batches.get_batch_status(db, args.batch_id)
        if status is None:
            raise EntityNotFoundError("Batch", args.batch_id)
        return status
    if not runtime.batches.cancel_batch(db, args.batch_id):
        raise EntityNotFoundError("Batch", args.batch_id)
    return runtime.batches.get_batch_status(db, args.batch_id)


def _jobs(args, db, runtime: Runtime):
    if args.command == "list":
        jobs = repository.list_jobs(
            db, status=args.status, flow_id=args.flow, source=args.source, limit=args.limit
        )
        return [JobResponse.from_row(job).model_dump() for job in jobs]
    if args.command == "show":
        return JobResponse.from_row(repository.require_job(db, args.job_id)).model_dump()
    if args.command == "fail":
        job = runtime.recovery.fail_job(db, args.job_id, args.reason)
        return JobResponse.from_row(job).model_dump()
    if args.command == "retry":
        return runtime.recovery.retry_job(db, args.job_id, force=args.force)
    if args.command == "recover-stuck":
        results = runtime.recovery.recover_stuck(
            db, timeout_hours=args.timeout, flow_id=args.flow, dry_run=args.dry_run
        )
        return {"dry_run": args.dry_run, "jobs": results}
    return runtime.recovery.jobs_summary(db)


def _flows(args, db, runtime: Runtime):
    if args.command == "run":
        return JobResponse.from_row(runtime.engine.run_flow(db, args.flow_id)).model_dump()

    flow_id, step_id = args.flow_id, args.step_id
    if args.queue_command == "add":
        return prompt_queue.add(db, flow_id, step_id, args.prompt)
    if args.queue_command == "list":
        return prompt_queue.list_entries(db, flow_id, step_id)
    if args.queue_command == "remove":
        return prompt_queue.remove(db, flow_id, step_id, args.index)
    if args.queue_command == "update":
        return prompt_queue.update(db, flow_id, step_id, args.index, args.prompt)
    if args.queue_command == "move":
        return prompt_queue.move(db, flow_id, step_id, args.from_index, args.to_index)
    return {"cleared": prompt_queue.clear(db, flow_id, step_id)}


COMMANDS = {"batch": _batch, "jobs": _jobs, "flows": _flows}


def main(argv=None, runtime: Runtime | None = None, session_factory=SessionLocal) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    if runtime is None:
        init_db()
        runtime = build_runtime(session_factory)

    db = session_factory()
    try:
        result = COMMANDS[args.group](args, db, runtime)
    except FlowMachineError as e:
        print(f"Error ({e.category}): {e.message}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Error (internal): {e}", file=sys.stderr)
        return 1
    finally:
        db.close()

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
