"""Command-line interface for remote-provisioner."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .config import AppConfig, load_config
from .models import ManagedResource, ServerRecord
from .provisioners import milestone_catalog
from .provisioning.jobs import JobOutcome, OperationRequest, ProvisioningJob, Runtime, cancel, mark_queued
from .runtime import build_queue, build_runtime
from .utils.logging import set_level


@dataclass
class CLIContext:
    """Context captured from CLI arguments."""

    config: AppConfig
    runtime: Runtime


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remote-provisioner",
        description="Install, update and remove services on remote servers over SSH.",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a JSON config file overriding defaults.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run an rq worker for the provisioning queue")
    worker_parser.add_argument("--queue", action="append", dest="queues", help="Queue name (repeatable)")
    worker_parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty")

    for name, help_text in (
        ("enqueue", "Queue an operation for a worker"),
        ("run", "Run an operation in this process, with retries"),
    ):
        op_parser = subparsers.add_parser(name, help=help_text)
        op_parser.add_argument("operation", help="Operation name, e.g. php.install")
        op_parser.add_argument("--server", required=True, help="Server id")
        op_parser.add_argument("--resource", required=True, help="Resource id")
        op_parser.add_argument(
            "--config", dest="operation_config", default=None,
            help="JSON object merged over the resource configuration",
        )

    retry_parser = subparsers.add_parser("retry", help="Re-queue the last operation of a failed resource")
    retry_parser.add_argument("--resource", required=True, help="Resource id")

    cancel_parser = subparsers.add_parser("cancel", help="Mark a stuck operation as failed")
    cancel_parser.add_argument("--resource", required=True, help="Resource id")

    status_parser = subparsers.add_parser("status", help="Show a resource and its progress")
    status_parser.add_argument("--resource", required=True, help="Resource id")
    status_parser.add_argument("--events", action="store_true", help="Include the progress event history")

    milestones_parser = subparsers.add_parser("milestones", help="List the milestones of each operation")
    milestones_parser.add_argument("--operation", default=None, help="Only this operation")

    server_parser = subparsers.add_parser("add-server", help="Register a server")
    server_parser.add_argument("--id", required=True, help="Server id")
    server_parser.add_argument("--host", required=True, help="Hostname or IP address")
    server_parser.add_argument("--port", type=int, default=22, help="SSH port")
    server_parser.add_argument("--name", default=None, help="Display name")

    resource_parser = subparsers.add_parser("add-resource", help="Create a pending resource record")
    resource_parser.add_argument("--server", required=True, help="Server id")
    resource_parser.add_argument("--type", required=True, dest="resource_type", help="Resource type, e.g. php")
    resource_parser.add_argument("--key", required=True, help="Identifier within the type, e.g. 8.3")
    resource_parser.add_argument(
        "--config", dest="operation_config", default=None,
        help="JSON object stored as the resource configuration",
    )

    return parser


def _parse_json_object(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("--config must be a JSON object")
    return value


def _build_context(args: argparse.Namespace) -> CLIContext:
    config = load_config(args.config)
    return CLIContext(config=config, runtime=build_runtime(config))


def _print_resource(resource: ManagedResource) -> None:
    progress = resource.progress
    print(f"📦 {resource.resource_type} {resource.key} ({resource.id}) on server {resource.server_id}")
    print(f"   Status:         {resource.status.value}")
    if resource.git_status is not None:
        print(f"   Git status:     {resource.git_status.value}")
    if resource.default_status is not None:
        print(f"   Default status: {resource.default_status.value}")
    print(f"   Default:        {'yes' if resource.is_default else 'no'}")
    if progress.total:
        print(f"   Progress:       {progress.step}/{progress.total} {progress.label or ''}")
    if resource.last_operation:
        print(f"   Last operation: {resource.last_operation}")
    if resource.error_log:
        print(f"   ❌ Error:\n{resource.error_log}")


def handle_status_command(args: argparse.Namespace, context: CLIContext) -> int:
    store = context.runtime.store
    resource = store.load(args.resource)
    if resource is None:
        print(f"❌ Resource not found: {args.resource}")
        return 1
    _print_resource(resource)
    if args.events:
        print()
        for event in store.events_for(resource.id):
            print(
                f"  [{event.created_at}] {event.operation} {event.current_step}/{event.total_steps} "
                f"{event.label} ({event.status})"
            )
    return 0


def handle_milestones_command(args: argparse.Namespace) -> int:
    catalog = milestone_catalog()
    if args.operation:
        if args.operation not in catalog:
            print(f"❌ Unknown operation: {args.operation}")
            return 1
        catalog = {args.operation: catalog[args.operation]}
    for operation, milestones in catalog.items():
        print(f"{operation}:")
        for index, milestone in enumerate(milestones, 1):
            print(f"  {index:>2}. {milestone['key']:<32} {milestone['label']}")
    return 0


def handle_run_command(args: argparse.Namespace, context: CLIContext) -> int:
    runtime = context.runtime
    resource = runtime.store.load(args.resource)
    if resource is None:
        print(f"❌ Resource not found: {args.resource}")
        return 1
    provisioner = runtime.registry.get(args.operation)
    mark_queued(runtime, provisioner, resource)
    request = OperationRequest(
        args.operation, args.server, args.resource, _parse_json_object(args.operation_config)
    )
    outcome = ProvisioningJob(runtime, request).run_sync()
    print(f"{args.operation}: {outcome.value}")
    return 1 if outcome is JobOutcome.FAILED else 0


def dispatch_command(args: argparse.Namespace) -> int:
    if args.log_level:
        set_level(args.log_level)

    if args.command == "milestones":
        return handle_milestones_command(args)

    context = _build_context(args)
    runtime = context.runtime

    if args.command == "worker":
        from .provisioning.worker import run_worker

        run_worker(runtime, args.queues, burst=args.burst)
        return 0

    if args.command == "add-server":
        runtime.store.save_server(ServerRecord(id=args.id, host=args.host, port=args.port, name=args.name))
        print(f"✅ Server {args.id} saved")
        return 0

    if args.command == "add-resource":
        if runtime.store.load_server(args.server) is None:
            print(f"❌ Server not found: {args.server}")
            return 1
        resource = runtime.store.add(
            ManagedResource.new(
                args.server, args.resource_type, args.key, _parse_json_object(args.operation_config)
            )
        )
        print(resource.id)
        return 0

    if args.command == "enqueue":
        job = build_queue(runtime).enqueue(
            args.operation, args.server, args.resource, _parse_json_object(args.operation_config)
        )
        print(f"📥 Queued job {job.id}")
        return 0

    if args.command == "run":
        return handle_run_command(args, context)

    if args.command == "retry":
        job = build_queue(runtime).retry(args.resource)
        print(f"📥 Queued job {job.id}")
        return 0

    if args.command == "cancel":
        if not cancel(runtime, args.resource):
            print(f"❌ Resource not found: {args.resource}")
            return 1
        print(f"🛑 Cancelled {args.resource}")
        return 0

    if args.command == "status":
        return handle_status_command(args, context)

    raise ValueError(f"Unsupported command: {args.command}")


def run_cli(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return dispatch_command(args)
