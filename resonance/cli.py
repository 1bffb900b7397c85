"""
Command-line entry point for the Resonance worker.

Usage:
    python -m resonance --config worker.yaml run
    python -m resonance --config worker.yaml handle <job-id>
    python -m resonance --set store.url=sqlite:///jobs.db init-db
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .config_schema import (
    ConfigError,
    WorkerConfig,
    available_presets,
    load_worker_config,
    write_config_template,
)
from .jobs import JobStatus
from .serverless import handler
from .shaders import describe_catalog
from .store import JobStore, StoreError
from .worker import LOG_FORMAT, Worker

LOG = logging.getLogger("resonance.cli")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _parse_set_overrides(values: Optional[List[str]]) -> dict[str, object]:
    if not values:
        return {}
    overrides: dict[str, object] = {}
    for item in values:
        if "=" not in item:
            raise ValueError(f"Override '{item}' must use KEY=VALUE format.")
        key, raw_value = item.split("=", 1)
        try:
            # Allow YAML parsing for convenience (numbers, booleans, lists)
            value = load_yaml_value(raw_value)
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"Failed to parse override '{item}': {exc}") from exc
        overrides[key.strip()] = value
    return overrides


def load_yaml_value(text: str) -> object:
    """Parse a single YAML value (used for CLI overrides)."""
    import yaml

    return yaml.safe_load(text)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resonance-worker",
        description="Audio-reactive shader video generation worker.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the worker YAML configuration file.",
    )
    parser.add_argument(
        "--preset",
        action="append",
        dest="presets",
        help="Apply a named preset overlay (can be specified multiple times).",
    )
    parser.add_argument(
        "--set",
        action="append",
        dest="overrides",
        metavar="KEY=VALUE",
        help="Apply inline overrides using dotted paths, e.g., runtime.workers=2.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this file instead of ./.env.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Poll the store and process jobs until interrupted.")
    run.add_argument(
        "--until-idle",
        action="store_true",
        help="Exit once no eligible job is left and running jobs have finished.",
    )

    handle = commands.add_parser("handle", help="Claim and process a single job synchronously.")
    handle.add_argument("job_id")

    enqueue = commands.add_parser("enqueue", help="Create a job record (Draft unless --submit).")
    enqueue.add_argument("--audio", required=True, help="Audio path or URL.")
    enqueue.add_argument("--style", default="{}", help="Style parameters as a JSON object.")
    enqueue.add_argument("--duration", type=float, default=None)
    enqueue.add_argument("--fps", type=int, default=None)
    enqueue.add_argument("--resolution", default=None, help="Preset name or WIDTHxHEIGHT.")
    enqueue.add_argument("--project", default=None, help="Owning project id.")
    enqueue.add_argument("--submit", action="store_true", help="Queue the job immediately.")

    submit = commands.add_parser("submit", help="Queue a Draft, Failed or Canceled job.")
    submit.add_argument("job_id")

    cancel = commands.add_parser("cancel", help="Cancel an in-flight job.")
    cancel.add_argument("job_id")
    cancel.add_argument(
        "--reset-to-draft",
        action="store_true",
        help="Return the job to Draft instead of Canceled.",
    )

    status = commands.add_parser("status", help="Print a job record as JSON.")
    status.add_argument("job_id")

    commands.add_parser("init-db", help="Create the jobs table if it does not exist.")
    commands.add_parser("list-shaders", help="List the available shader kinds and exit.")
    commands.add_parser("list-presets", help="List available preset overlays and exit.")

    init_config = commands.add_parser("init-config", help="Write a worker.yaml template.")
    init_config.add_argument("path", type=Path)

    return parser


def _load_config(args: argparse.Namespace) -> WorkerConfig:
    overrides = _parse_set_overrides(args.overrides)
    return load_worker_config(
        args.config,
        extra_presets=args.presets,
        overrides=overrides,
    )


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _request_stop(signum, _frame) -> None:
        LOG.info("Received signal %s; finishing running jobs", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _run_command(args: argparse.Namespace, config: WorkerConfig) -> int:
    log_level = logging.DEBUG if args.verbose else logging.INFO

    if args.command == "run":
        worker = Worker(config, log_level=log_level)
        stop_event = threading.Event()
        _install_signal_handlers(stop_event)
        results = worker.run(stop_event, until_idle=args.until_idle)
        failed = [r for r in results if r.status is JobStatus.FAILED]
        return 1 if failed and args.until_idle else 0

    if args.command == "handle":
        response = handler({"input": {"job_id": args.job_id}}, config=config)
        _print_json(response)
        return 0 if response["success"] else 1

    store = JobStore.from_config(config.store)
    try:
        if args.command == "init-db":
            store.create_schema()
            LOG.info("Schema ready (table '%s')", config.store.table)
            return 0

        if args.command == "enqueue":
            style = json.loads(args.style)
            if not isinstance(style, dict):
                raise ValueError("--style must be a JSON object.")
            job_id = store.insert_job(
                audio_url=args.audio,
                style_parameters=style,
                project_id=args.project,
                duration_seconds=args.duration,
                target_fps=args.fps,
                target_resolution=args.resolution,
            )
            if args.submit:
                store.submit(job_id)
            print(job_id)
            return 0

        if args.command == "submit":
            if not store.submit(args.job_id):
                LOG.error("Job %s cannot be queued (no audio or not Draft/Failed/Canceled)", args.job_id)
                return 1
            return 0

        if args.command == "cancel":
            if not store.request_cancel(args.job_id, reset_to_draft=args.reset_to_draft):
                LOG.error("Job %s is not in flight", args.job_id)
                return 1
            return 0

        if args.command == "status":
            record = store.get(args.job_id)
            if record is None:
                LOG.error("Job %s not found", args.job_id)
                return 1
            _print_json(record)
            return 0
    finally:
        store.dispose()

    raise ValueError(f"Unknown command '{args.command}'.")  # pragma: no cover


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command == "list-shaders":
        for name, description in describe_catalog().items():
            print(f"  - {name}: {description}")
        return 0
    if args.command == "list-presets":
        print("Preset overlays:")
        for name in available_presets():
            print(f"  - {name}")
        return 0
    if args.command == "init-config":
        write_config_template(args.path)
        LOG.info("Template written to %s", args.path)
        return 0

    if args.env_file is not None:
        load_dotenv(args.env_file)
    else:
        load_dotenv()

    try:
        config = _load_config(args)
    except (ConfigError, FileNotFoundError, TypeError, ValueError) as exc:
        LOG.error("Invalid configuration: %s", exc)
        return 2

    LOG.debug("Configuration | %s", json.dumps(config.describe(), default=str))
    try:
        return _run_command(args, config)
    except (StoreError, KeyError, ValueError) as exc:
        LOG.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
