"""
n8n Lifecycle Controller
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import argparse
import os
import sys
from dataclasses import dataclass, replace

from .lifecycle import LifecycleOrchestrator, exit_code_for
from .modules.n8n import MODULE_CONFIG, get_stack_config, resolve_service_set
from .utils.config import Settings, generate_credentials, load_settings
from .utils.container_runtime import ContainerRuntime
from .utils.errors import AbandonedAttempt, LeaseHeld, LifecycleError, RestorePointNotFound
from .utils.index import log_message, setup_global_logging
from .utils.lease import LifecycleLease
from .utils.notifier import Notifier
from .utils.offsite import OffsiteUploader
from .utils.service_controller import ServiceController, ServiceSet
from .utils.snapshot_manager import SnapshotManager
from .utils.version_resolver import VersionResolver

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNRECOVERABLE = 2
EXIT_LEASE = 3
EXIT_INTERRUPTED = 130


@dataclass
class Context:
    """Collaborators wired for one CLI invocation."""
    settings: Settings
    runtime: ContainerRuntime
    service_set: ServiceSet
    controller: ServiceController
    snapshots: SnapshotManager
    resolver: VersionResolver
    lease: LifecycleLease
    orchestrator: LifecycleOrchestrator


def lease_name() -> str:
    # One lease per deployment: auto-detected mode can change while services are stopped
    return MODULE_CONFIG.get("metadata", {}).get("module_name", "n8n")


def build_context(settings: Settings) -> Context:
    stack = get_stack_config()
    runtime = ContainerRuntime(settings.container_runtime, settings.compose_command_args,
                               settings.project_root)
    service_set = resolve_service_set(settings, runtime)
    controller = ServiceController(runtime, service_set, http_timeout=settings.version_timeout)
    snapshots = SnapshotManager(settings, runtime, controller, stack)
    resolver = VersionResolver(runtime, service_set.app.container, stack["commands"]["version"],
                               settings.n8n_releases_url, timeout=settings.version_timeout)
    lease = LifecycleLease(settings.state_dir, lease_name())
    orchestrator = LifecycleOrchestrator(
        settings, controller, snapshots, resolver, lease,
        notifier=Notifier(settings.notification_webhook),
        probe_command=stack["commands"]["probe"],
        uploader=OffsiteUploader(runtime, settings.oci_bucket_name, settings.oci_region)
    )
    return Context(settings, runtime, service_set, controller, snapshots, resolver, lease, orchestrator)


# --- Commands ---
def check_only(ctx: Context) -> int:
    """Exit 0 when an update is available, 1 otherwise."""
    log_message("Check-only mode: detecting updates without applying...")
    result = ctx.resolver.check()
    log_message(f"Current: {result.current}  Latest: {result.latest}  "
                f"Update available: {'yes' if result.update_available else 'no'}")
    return EXIT_OK if result.update_available else EXIT_FAILED


def run_update(ctx: Context, force: bool = False) -> int:
    report = ctx.orchestrator.run(force=force)
    return exit_code_for(report)


def run_backup(ctx: Context) -> int:
    report = ctx.orchestrator.run_backup()
    return exit_code_for(report)


def run_restore(ctx: Context, point_id: str) -> int:
    if point_id == "latest":
        point = ctx.snapshots.latest()
        if point is None:
            log_message(f"No restore points found in {ctx.settings.backup_path}", "ERROR")
            return EXIT_FAILED
    else:
        point = ctx.snapshots.get(point_id)

    if point.mode != ctx.service_set.mode:
        # Restore brings back the services the point was taken with
        log_message(f"⚠ Restore point {point.id} was taken in {point.mode} mode, "
                    f"deployment resolved to {ctx.service_set.mode}; restoring as {point.mode}", "WARNING")
        ctx = build_context(replace(ctx.settings, deployment_mode=point.mode))
    report = ctx.orchestrator.run_restore(point)
    return exit_code_for(report)


def list_backups(ctx: Context) -> int:
    points = ctx.snapshots.list()
    if not points:
        log_message(f"No restore points found in {ctx.settings.backup_path}")
        return EXIT_OK

    log_message("Available restore points:")
    log_message("-" * 80)
    for point in points:
        verified = {True: "VERIFIED", False: "FAILED", None: "UNVERIFIED"}[point.verified]
        size = sum(a.size for a in point.artifacts)
        log_message(f"{point.id:<20} {point.mode:<11} v{point.app_version:<10} {verified:<11} "
                    f"{len(point.artifacts)} artifacts, {size / 1024 / 1024:.1f} MB")
    log_message("-" * 80)
    log_message(f"Total: {len(points)} restore points")
    return EXIT_OK


def verify_backup(ctx: Context, point_id: str) -> int:
    point = ctx.snapshots.latest() if point_id == "latest" else ctx.snapshots.get(point_id)
    if point is None:
        log_message(f"No restore points found in {ctx.settings.backup_path}", "ERROR")
        return EXIT_FAILED
    return EXIT_OK if ctx.snapshots.verify(point) else EXIT_FAILED


def prune_backups(ctx: Context) -> int:
    ctx.lease.acquire(f"prune-{os.getpid()}", command="prune")
    try:
        ctx.snapshots.prune(ctx.settings.backup_retention_days, ctx.settings.backup_retention_count)
    finally:
        ctx.lease.release()
    return EXIT_OK


def show_status(ctx: Context) -> int:
    log_message(f"Deployment mode: {ctx.service_set.mode} ({ctx.service_set.compose_file})")
    results = ctx.controller.status()
    try:
        for container in ctx.runtime.list_containers():
            log_message(f"  {container['name']:<12} {container['status']:<28} {container['image']}")
    except LifecycleError as e:
        log_message(f"Cannot list containers: {e}", "WARNING")
    lease = ctx.lease.read()
    if lease is not None:
        log_message(f"⚠ Lease held by attempt {lease.get('attempt_id', 'unknown')} "
                    f"({lease.get('command', 'unknown')}, phase {lease.get('phase', 'unknown')})", "WARNING")
    latest = ctx.snapshots.latest()
    log_message(f"Latest restore point: {latest.id if latest else 'none'}")
    return EXIT_OK if all(r["healthy"] for r in results.values()) else EXIT_FAILED


def release_lock(settings: Settings) -> int:
    LifecycleLease(settings.state_dir, lease_name()).force_release()
    return EXIT_OK


def init_env(settings: Settings) -> int:
    generated = generate_credentials(settings.env_file)
    log_message(f"Generated {len(generated)} credentials in {settings.env_file}")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="n8n-lifecycle",
        description="Update, back up and restore a self-hosted n8n deployment"
    )
    parser.add_argument("--project-root", default=os.environ.get("N8N_PROJECT_ROOT", os.getcwd()),
                        help="Deployment directory holding config/, data/ and .env")
    parser.add_argument("--env-file", default=None,
                        help="Path of the .env file (default: <project-root>/.env)")
    parser.add_argument("--debug", action="store_true",
                        help="Log debug output to the console")

    commands = parser.add_mutually_exclusive_group()
    commands.add_argument("--check-only", action="store_true",
                          help="Only check for updates, don't apply them (exit 0 if available)")
    commands.add_argument("--force", action="store_true",
                          help="Update even if the running version is the latest")
    commands.add_argument("--backup", action="store_true",
                          help="Create, verify and prune restore points")
    commands.add_argument("--restore", metavar="ID",
                          help="Restore a restore point (or 'latest')")
    commands.add_argument("--list-backups", action="store_true",
                          help="List restore points, newest first")
    commands.add_argument("--verify-backup", metavar="ID",
                          help="Verify the integrity of a restore point (or 'latest')")
    commands.add_argument("--prune", action="store_true",
                          help="Apply the retention policy to restore points")
    commands.add_argument("--status", action="store_true",
                          help="Show running and health status of every service")
    commands.add_argument("--release-lock", action="store_true",
                          help="Remove a lease left by an interrupted or halted attempt")
    commands.add_argument("--init-env", action="store_true",
                          help="Generate missing credentials in the .env file")
    return parser


def command_name(args) -> str:
    for name in ("check_only", "backup", "restore", "list_backups", "verify_backup",
                 "prune", "status", "release_lock", "init_env"):
        if getattr(args, name):
            return name.replace("_", "-")
    return "update"


def dispatch(args, settings: Settings) -> int:
    if args.release_lock:
        return release_lock(settings)
    if args.init_env:
        return init_env(settings)

    ctx = build_context(settings)
    if args.check_only:
        return check_only(ctx)
    if args.backup:
        return run_backup(ctx)
    if args.restore:
        return run_restore(ctx, args.restore)
    if args.list_backups:
        return list_backups(ctx)
    if args.verify_backup:
        return verify_backup(ctx, args.verify_backup)
    if args.prune:
        return prune_backups(ctx)
    if args.status:
        return show_status(ctx)
    return run_update(ctx, force=args.force)


def main(argv=None):
    """
    Main entry point for the n8n lifecycle controller.
    Runs one command and exits with its status code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    command = command_name(args)

    try:
        settings = load_settings(args.project_root, args.env_file)
    except ValueError as e:
        setup_global_logging(None, command, args.debug)
        log_message(f"Invalid configuration: {e}", "ERROR")
        sys.exit(EXIT_FAILED)

    try:
        setup_global_logging(settings.log_dir, command, args.debug)
    except OSError as e:
        setup_global_logging(None, command, args.debug)
        log_message(f"Cannot write log file in {settings.log_dir}: {e}", "WARNING")

    try:
        sys.exit(dispatch(args, settings))
    except (LeaseHeld, AbandonedAttempt) as e:
        log_message(f"✗ {e}", "ERROR")
        sys.exit(EXIT_LEASE)
    except RestorePointNotFound as e:
        log_message(f"✗ {e}", "ERROR")
        sys.exit(EXIT_FAILED)
    except LifecycleError as e:
        log_message(f"✗ {command} failed: {e}", "ERROR")
        sys.exit(EXIT_FAILED)
    except KeyboardInterrupt:
        log_message("Interrupted; an in-flight attempt keeps its lease until resolved", "WARNING")
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    main()
