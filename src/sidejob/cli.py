from __future__ import annotations

import argparse
import importlib
import json
import logging
import sys
from pathlib import Path

from .app_logging import log_with_fields, setup_logger
from .config import AppConfig, ensure_local_paths, load_config
from .errors import NotFound, SideJobError
from .graph import GRAPH_CLASS
from .graph import register as register_graph
from .job import Job
from .parser import parse, unparse
from .runner import Runner
from .runtime import Runtime


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sidejob", description="Dataflow job runtime on Redis")
    parser.add_argument("--config", help="Path to sidejob YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    work = subparsers.add_parser("work", help="Run the worker polling loop")
    work.add_argument("--once", action="store_true", help="Run one polling cycle, then exit")

    compile_parser = subparsers.add_parser("compile", help="Compile DSL text to JSON")
    compile_parser.add_argument("file", help="DSL file, or - for stdin")

    decompile = subparsers.add_parser("decompile", help="Render a compiled JSON document as DSL")
    decompile.add_argument("file", help="JSON file, or - for stdin")

    status = subparsers.add_parser("status", help="Show job counts or one job")
    status.add_argument("--job-id", type=int, help="Job id to show")

    terminate = subparsers.add_parser("terminate", help="Terminate a job")
    terminate.add_argument("--job-id", type=int, required=True, help="Job id to terminate")
    terminate.add_argument("--recursive", action="store_true", help="Also terminate every descendant")

    delete = subparsers.add_parser("delete", help="Delete a terminated job tree")
    delete.add_argument("--job-id", type=int, required=True, help="Job id to delete")

    publish = subparsers.add_parser("publish", help="Publish a message on a channel")
    publish.add_argument("--channel", required=True, help="Channel path, e.g. /sensors/a")
    publish.add_argument("--data", required=True, help="JSON message; plain text is sent as a string")
    return parser


def _read_source(file: str) -> str:
    if file == "-":
        return sys.stdin.read()
    return Path(file).read_text(encoding="utf-8")


def _open_runtime(config: AppConfig, *, load_workers: bool = False) -> Runtime:
    ensure_local_paths(config)
    logger = setup_logger(config.log.path, config.log.level)
    runtime = Runtime.from_config(config, logger)
    if load_workers:
        for module_name in config.workers:
            module = importlib.import_module(module_name)
            module.register(runtime)
            log_with_fields(logger, logging.INFO, "workers_loaded", module=module_name)
        for queue in config.runner.queues:
            if runtime.registry.get(queue, GRAPH_CLASS) is None:
                register_graph(runtime, queue)
    return runtime


def _require_job(runtime: Runtime, job_id: int) -> Job:
    job = runtime.find(job_id)
    if job is None:
        raise NotFound(f"job not found: {job_id}")
    return job


def cmd_work(config: AppConfig, *, once: bool = False) -> int:
    runtime = _open_runtime(config, load_workers=True)
    runner = Runner(runtime)
    try:
        if once:
            runner.run_once()
            return 0
        runner.run_forever()
    except KeyboardInterrupt:
        log_with_fields(runtime.logger, logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        runtime.close()


def cmd_compile(file: str) -> int:
    print(json.dumps(parse(_read_source(file)), indent=2, sort_keys=True))
    return 0


def cmd_decompile(file: str) -> int:
    print(unparse(json.loads(_read_source(file))), end="")
    return 0


def cmd_status(config: AppConfig, job_id: int | None) -> int:
    runtime = _open_runtime(config)
    try:
        if job_id is None:
            counts = runtime.store.summary_counts()
            print("Jobs:")
            for status, count in counts.items():
                print(f"  {status:12} {count}")
            return 0

        job = _require_job(runtime, job_id)
        record = job.record()
        print(f"job {record.job_id}: {record.queue}/{record.worker_class} status={record.status.value}")
        if record.parent is not None:
            print(f"  parent={record.parent} name={record.name}")
        if record.error:
            print(f"  error={record.error}")
        for name, child in job.children().items():
            print(f"  child {name}: {child.id} status={child.status.value}")
        return 0
    finally:
        runtime.close()


def cmd_terminate(config: AppConfig, job_id: int, *, recursive: bool = False) -> int:
    runtime = _open_runtime(config)
    try:
        _require_job(runtime, job_id).terminate(recursive=recursive)
        print(f"terminating {job_id}")
        return 0
    finally:
        runtime.close()


def cmd_delete(config: AppConfig, job_id: int) -> int:
    runtime = _open_runtime(config)
    try:
        if not _require_job(runtime, job_id).delete():
            print(f"job {job_id} and its descendants must be terminated before delete", file=sys.stderr)
            return 2
        print(f"deleted {job_id}")
        return 0
    finally:
        runtime.close()


def cmd_publish(config: AppConfig, channel: str, data: str) -> int:
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        message = data
    runtime = _open_runtime(config)
    try:
        writes = runtime.publish(channel, message)
        print(f"published to {channel}: {writes} port writes")
        return 0
    finally:
        runtime.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "compile":
            return cmd_compile(args.file)
        if args.command == "decompile":
            return cmd_decompile(args.file)

        config = load_config(args.config)
        if args.command == "work":
            return cmd_work(config, once=bool(args.once))
        if args.command == "status":
            return cmd_status(config, args.job_id)
        if args.command == "terminate":
            return cmd_terminate(config, args.job_id, recursive=bool(args.recursive))
        if args.command == "delete":
            return cmd_delete(config, args.job_id)
        if args.command == "publish":
            return cmd_publish(config, args.channel, args.data)
    except SideJobError as exc:
        print(str(exc), file=sys.stderr)
        return 2
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
