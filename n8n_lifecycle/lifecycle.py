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

"""
Lifecycle Orchestrator

Drives one lifecycle attempt as an explicit state machine:

    idle → checking_version → snapshotting → updating → verifying_health
         → committed | rolling_back → terminal

The attempt context (versions, restore point, health results) travels in
an UpdateAttempt instead of module-level state. Every attempt holds the
service set's lease from start to terminal state, and every terminal state
produces a report and a notification.

Usage:
    orchestrator = LifecycleOrchestrator(settings, controller, snapshots,
                                         resolver, lease, notifier)
    report = orchestrator.run(force=False)
"""

import datetime
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .utils.config import Settings
from .utils.errors import (
    HealthCheckTimeout, InvalidTransition, LifecycleError,
    RollbackHealthFailure, SnapshotIncomplete
)
from .utils.index import get_timestamp, log_message
from .utils.lease import LifecycleLease
from .utils.notifier import Notifier
from .utils.offsite import OffsiteUploader
from .utils.report import AttemptReport
from .utils.service_controller import ServiceController
from .utils.snapshot_manager import RestorePoint, SnapshotManager
from .utils.version_resolver import UNKNOWN_VERSION, VersionResolver


class LifecycleState(Enum):
    IDLE = "idle"
    CHECKING_VERSION = "checking_version"
    SNAPSHOTTING = "snapshotting"
    UPDATING = "updating"
    VERIFYING_HEALTH = "verifying_health"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    TERMINAL = "terminal"


class AttemptOutcome(Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    NO_OP = "no_op"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    FAILED_UNRECOVERABLE = "failed_unrecoverable"


VALID_TRANSITIONS = {
    LifecycleState.IDLE: [LifecycleState.CHECKING_VERSION],
    LifecycleState.CHECKING_VERSION: [LifecycleState.SNAPSHOTTING, LifecycleState.TERMINAL],
    LifecycleState.SNAPSHOTTING: [LifecycleState.UPDATING, LifecycleState.TERMINAL],
    LifecycleState.UPDATING: [LifecycleState.VERIFYING_HEALTH, LifecycleState.ROLLING_BACK],
    LifecycleState.VERIFYING_HEALTH: [LifecycleState.COMMITTED, LifecycleState.ROLLING_BACK],
    LifecycleState.COMMITTED: [LifecycleState.TERMINAL],
    LifecycleState.ROLLING_BACK: [LifecycleState.TERMINAL],
    LifecycleState.TERMINAL: [],
}

EXIT_CODES = {
    AttemptOutcome.SUCCEEDED: 0,
    AttemptOutcome.NO_OP: 0,
    AttemptOutcome.FAILED: 1,
    AttemptOutcome.ROLLED_BACK: 1,
    AttemptOutcome.FAILED_UNRECOVERABLE: 2,
}


@dataclass
class UpdateAttempt:
    """Context of one lifecycle attempt; summarized into a report once terminal."""
    attempt_id: str
    started_at: float
    command: str = "update"
    forced: bool = False
    state: LifecycleState = LifecycleState.IDLE
    outcome: AttemptOutcome = AttemptOutcome.PENDING
    current_version: str = UNKNOWN_VERSION
    target_version: str = UNKNOWN_VERSION
    final_version: str = UNKNOWN_VERSION
    restore_point: Optional[RestorePoint] = None
    restore_point_verified: Optional[bool] = None
    previous_image: Optional[Tuple[str, str]] = None
    states: List[str] = field(default_factory=lambda: [LifecycleState.IDLE.value])
    service_health: Dict[str, bool] = field(default_factory=dict)
    probe_ok: Optional[bool] = None
    rollback_health: Dict[str, bool] = field(default_factory=dict)
    pruned: List[str] = field(default_factory=list)
    offsite_object: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    finished_at: Optional[float] = None

    @property
    def terminal(self) -> bool:
        return self.state is LifecycleState.TERMINAL


class LifecycleOrchestrator:
    """Single control thread driving check → snapshot → update → verify → commit/rollback."""

    def __init__(self, settings: Settings, controller: ServiceController,
                 snapshots: SnapshotManager, resolver: VersionResolver,
                 lease: LifecycleLease, notifier: Optional[Notifier] = None,
                 probe_command: Optional[List[str]] = None,
                 report_dir: Optional[str] = None,
                 uploader: Optional[OffsiteUploader] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.controller = controller
        self.service_set = controller.service_set
        self.snapshots = snapshots
        self.resolver = resolver
        self.lease = lease
        self.notifier = notifier or Notifier(settings.notification_webhook)
        self.probe_command = list(probe_command or ["n8n", "list:workflow"])
        self.report_dir = report_dir or settings.log_dir
        self.uploader = uploader
        self.sleep = sleep
        self.clock = clock

    # --- State machine plumbing ---
    def _new_attempt(self, command: str, forced: bool = False) -> UpdateAttempt:
        started_at = self.clock()
        return UpdateAttempt(
            attempt_id=get_timestamp(datetime.datetime.fromtimestamp(started_at)),
            started_at=started_at,
            command=command,
            forced=forced
        )

    def _transition(self, attempt: UpdateAttempt, to_state: LifecycleState) -> None:
        if to_state not in VALID_TRANSITIONS[attempt.state]:
            raise InvalidTransition(f"{attempt.state.value} → {to_state.value} is not a valid transition")
        log_message(f"State: {attempt.state.value} → {to_state.value}")
        attempt.state = to_state
        attempt.states.append(to_state.value)
        try:
            self.lease.update_phase(to_state.value)
        except OSError as e:
            log_message(f"Failed to record phase {to_state.value} in lease: {e}", "ERROR")

    def _fail(self, attempt: UpdateAttempt, outcome: AttemptOutcome, error: Exception) -> None:
        attempt.outcome = outcome
        attempt.errors.append(f"{type(error).__name__}: {error}")

    def _wait_all_healthy(self) -> Dict[str, bool]:
        return self.controller.wait_all_healthy(self.settings.health_max_attempts,
                                                self.settings.health_interval)

    # --- States ---
    def _check_version(self, attempt: UpdateAttempt) -> bool:
        self._transition(attempt, LifecycleState.CHECKING_VERSION)
        check = self.resolver.check()
        attempt.current_version = check.current
        attempt.target_version = check.latest
        attempt.final_version = check.current

        if check.update_available:
            return True
        if attempt.forced:
            log_message("⚠ Forced update requested, bypassing version check", "WARNING")
            return True

        attempt.outcome = AttemptOutcome.NO_OP
        log_message("No update required")
        self._transition(attempt, LifecycleState.TERMINAL)
        return False

    def _snapshot(self, attempt: UpdateAttempt) -> bool:
        self._transition(attempt, LifecycleState.SNAPSHOTTING)
        try:
            point = self.snapshots.capture(app_version=attempt.current_version)
        except (LifecycleError, OSError) as e:
            log_message(f"✗ Cannot create a restorable snapshot, refusing to update: {e}", "ERROR")
            self._fail(attempt, AttemptOutcome.FAILED, e)
            self._transition(attempt, LifecycleState.TERMINAL)
            return False

        attempt.restore_point = point
        attempt.restore_point_verified = self.snapshots.verify(point)
        broken = [a.kind for a in point.artifacts if a.mandatory and not a.verified]
        if broken:
            error = SnapshotIncomplete(broken, {a.kind: a.error for a in point.artifacts if a.kind in broken})
            log_message(f"✗ Restore point {point.id} failed verification, refusing to update", "ERROR")
            self._fail(attempt, AttemptOutcome.FAILED, error)
            self._transition(attempt, LifecycleState.TERMINAL)
            return False
        if not attempt.restore_point_verified:
            log_message(f"⚠ Optional artifacts of {point.id} failed verification, continuing", "WARNING")
        return True

    def _update(self, attempt: UpdateAttempt) -> None:
        self._transition(attempt, LifecycleState.UPDATING)
        attempt.previous_image = self.controller.current_image(self.service_set.app.name)

        self.controller.stop_writers()
        self.controller.pull_latest_images()
        self.controller.restart_all()

        if self.settings.settle_seconds > 0:
            log_message(f"Waiting {self.settings.settle_seconds:g}s for services to settle...")
            self.sleep(self.settings.settle_seconds)

    def _verify_health(self, attempt: UpdateAttempt) -> bool:
        self._transition(attempt, LifecycleState.VERIFYING_HEALTH)
        attempt.service_health = self._wait_all_healthy()
        unhealthy = [name for name, ok in attempt.service_health.items() if not ok]
        if unhealthy:
            attempt.errors.append(f"HealthCheckTimeout: {HealthCheckTimeout(unhealthy)}")
            return False

        attempt.probe_ok = self.controller.run_probe(self.service_set.app.name, self.probe_command)
        if not attempt.probe_ok:
            attempt.errors.append("Functional probe failed")
        return attempt.probe_ok

    def _commit(self, attempt: UpdateAttempt) -> None:
        self._transition(attempt, LifecycleState.COMMITTED)
        attempt.outcome = AttemptOutcome.SUCCEEDED
        attempt.final_version = self.resolver.current_version()
        log_message(f"✓ n8n updated: {attempt.current_version} → {attempt.final_version}")

        # Best-effort cleanup; failures never change the outcome
        try:
            attempt.pruned = self.snapshots.prune(self.settings.backup_retention_days,
                                                  self.settings.backup_retention_count)
        except Exception as e:
            log_message(f"⚠ Restore point pruning failed: {e}", "WARNING")
        try:
            if self.service_set.app_image:
                self.controller.cleanup_images(self.service_set.app_image, self.settings.image_keep_count)
        except Exception as e:
            log_message(f"⚠ Image cleanup failed: {e}", "WARNING")

        self._transition(attempt, LifecycleState.TERMINAL)

    def _rollback(self, attempt: UpdateAttempt) -> None:
        self._transition(attempt, LifecycleState.ROLLING_BACK)
        log_message(f"Rolling back to restore point {attempt.restore_point.id}...", "WARNING")
        try:
            self.controller.stop_all()
            if attempt.previous_image:
                self.controller.pin_image(*attempt.previous_image)
            self.snapshots.restore(attempt.restore_point)
            self.controller.start_all()

            attempt.rollback_health = self._wait_all_healthy()
            unhealthy = [name for name, ok in attempt.rollback_health.items() if not ok]
            if unhealthy:
                raise RollbackHealthFailure(f"Services unhealthy after rollback: {', '.join(unhealthy)}")
        except RollbackHealthFailure as e:
            log_message(f"✗ {e}; manual intervention required", "ERROR")
            self._fail(attempt, AttemptOutcome.FAILED_UNRECOVERABLE, e)
        except Exception as e:
            log_message(f"✗ Rollback failed, manual intervention required: {e}", "ERROR")
            self._fail(attempt, AttemptOutcome.FAILED_UNRECOVERABLE,
                       RollbackHealthFailure(f"Rollback did not complete: {type(e).__name__}: {e}"))
        else:
            attempt.outcome = AttemptOutcome.ROLLED_BACK
            attempt.final_version = self.resolver.current_version()
            log_message("✓ Rollback completed, services healthy on the previous state", "WARNING")

        self._transition(attempt, LifecycleState.TERMINAL)

    # --- Reporting ---
    def _report(self, attempt: UpdateAttempt) -> AttemptReport:
        point = attempt.restore_point
        return AttemptReport(
            attempt_id=attempt.attempt_id,
            command=attempt.command,
            outcome=attempt.outcome.value,
            started_at=attempt.started_at,
            finished_at=attempt.finished_at,
            forced=attempt.forced,
            mode=self.service_set.mode,
            current_version=attempt.current_version,
            target_version=attempt.target_version,
            final_version=attempt.final_version,
            restore_point_id=point.id if point else None,
            restore_point_verified=attempt.restore_point_verified,
            states=list(attempt.states),
            service_health=dict(attempt.service_health),
            probe_ok=attempt.probe_ok,
            rollback_health=dict(attempt.rollback_health),
            pruned=list(attempt.pruned),
            offsite_object=attempt.offsite_object,
            errors=list(attempt.errors)
        )

    def _finish(self, attempt: UpdateAttempt) -> AttemptReport:
        attempt.finished_at = self.clock()
        report = self._report(attempt)
        try:
            try:
                report.write(self.report_dir)
            except OSError as e:
                log_message(f"Failed to write report: {e}", "WARNING")
            self.notifier.send(report.notification_text())
        finally:
            if attempt.outcome is AttemptOutcome.FAILED_UNRECOVERABLE:
                self.lease.halt("; ".join(attempt.errors) or "unrecoverable failure")
            else:
                self.lease.release()

        level = "INFO" if report.succeeded else "ERROR"
        log_message(f"{attempt.command.capitalize()} attempt {attempt.attempt_id} finished: {report.status_label}", level)
        return report

    def _drive(self, attempt: UpdateAttempt, body: Callable[[UpdateAttempt], None]) -> AttemptReport:
        """Run an attempt body under the lease; always ends in a terminal state with a report."""
        self.lease.acquire(attempt.attempt_id, command=attempt.command)
        try:
            body(attempt)
        except Exception as e:
            # Errors outside the rollback-routed states; nothing was mutated
            log_message(f"✗ Unexpected error in state {attempt.state.value}: {e}", "ERROR")
            if attempt.outcome is AttemptOutcome.PENDING:
                self._fail(attempt, AttemptOutcome.FAILED, e)
            else:
                attempt.errors.append(f"{type(e).__name__}: {e}")
        if not attempt.terminal:
            attempt.state = LifecycleState.TERMINAL
            attempt.states.append(LifecycleState.TERMINAL.value)
        return self._finish(attempt)

    # --- Entry points ---
    def _update_body(self, attempt: UpdateAttempt) -> None:
        if not self._check_version(attempt):
            return
        if not self._snapshot(attempt):
            return

        try:
            self._update(attempt)
            healthy = self._verify_health(attempt)
        except Exception as e:
            log_message(f"✗ Error during {attempt.state.value}: {e}", "ERROR")
            attempt.errors.append(f"{type(e).__name__}: {e}")
            healthy = False

        if healthy:
            self._commit(attempt)
        else:
            self._rollback(attempt)

    def run(self, force: bool = False) -> AttemptReport:
        """
        Run one update attempt.

        Args:
            force: Bypass the version check

        Returns:
            AttemptReport: Summary of the terminal attempt

        Raises:
            LeaseHeld: Another attempt is running
            AbandonedAttempt: A previous attempt needs operator resolution
        """
        log_message("Starting n8n update process...")
        return self._drive(self._new_attempt("update", forced=force), self._update_body)

    def _backup_body(self, attempt: UpdateAttempt) -> None:
        self.lease.update_phase(LifecycleState.SNAPSHOTTING.value)
        attempt.current_version = self.resolver.current_version()
        attempt.final_version = attempt.current_version
        try:
            attempt.restore_point = self.snapshots.capture(app_version=attempt.current_version)
        except SnapshotIncomplete as e:
            self._fail(attempt, AttemptOutcome.FAILED, e)
        else:
            attempt.restore_point_verified = self.snapshots.verify(attempt.restore_point)
            if attempt.restore_point_verified:
                attempt.outcome = AttemptOutcome.SUCCEEDED
                if self.uploader is not None and self.uploader.upload(attempt.restore_point):
                    attempt.offsite_object = self.uploader.object_name(attempt.restore_point)
            else:
                attempt.outcome = AttemptOutcome.FAILED
                attempt.errors.append(f"Restore point {attempt.restore_point.id} failed verification")

        # Retention runs regardless of the verification result
        try:
            attempt.pruned = self.snapshots.prune(self.settings.backup_retention_days,
                                                  self.settings.backup_retention_count)
        except OSError as e:
            log_message(f"⚠ Restore point pruning failed: {e}", "WARNING")

    def run_backup(self) -> AttemptReport:
        """Scheduled backup: capture, verify, report, notify, prune."""
        log_message("Starting n8n backup process...")
        return self._drive(self._new_attempt("backup"), self._backup_body)

    def run_restore(self, point: RestorePoint) -> AttemptReport:
        """Operator restore: stop all, restore, start in order, wait healthy."""
        def body(attempt: UpdateAttempt) -> None:
            attempt.restore_point = point
            attempt.restore_point_verified = point.verified
            self.lease.update_phase("restoring")
            self.controller.stop_all()
            self.snapshots.restore(point)
            self.controller.start_all()
            attempt.rollback_health = self._wait_all_healthy()
            unhealthy = [name for name, ok in attempt.rollback_health.items() if not ok]
            if unhealthy:
                self._fail(attempt, AttemptOutcome.FAILED, HealthCheckTimeout(unhealthy))
            else:
                attempt.outcome = AttemptOutcome.SUCCEEDED
            attempt.final_version = self.resolver.current_version()

        log_message(f"Starting restore from {point.id}...")
        return self._drive(self._new_attempt("restore"), body)


def exit_code_for(report: AttemptReport) -> int:
    return EXIT_CODES.get(AttemptOutcome(report.outcome), 1)
