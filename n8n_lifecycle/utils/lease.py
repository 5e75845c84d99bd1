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
Lifecycle Lease

One lease file per service set guarantees a single lifecycle attempt at a
time. The lease also records the phase the attempt has reached, so the next
invocation can tell an interrupted attempt apart from one that never
started mutating anything.

Usage:
    lease = LifecycleLease("/home/opc/n8n-setup/state", "production")
    lease.acquire(attempt_id, command="update")
    lease.update_phase("updating")
    lease.release()
"""

import json
import os
import socket
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import AbandonedAttempt, LeaseHeld
from .index import log_message

# Phases in which nothing has been mutated yet; a dead holder may be reclaimed
RECLAIMABLE_PHASES = {"idle", "checking_version", "snapshotting"}
HALTED_PHASE = "halted"


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class LifecycleLease:
    """File-backed lease keyed by service set name."""

    def __init__(self, state_dir: str, service_set_name: str):
        self.state_dir = Path(state_dir)
        self.service_set_name = service_set_name
        self.path = self.state_dir / f"{service_set_name}.lease"
        self.attempt_id: Optional[str] = None

    @property
    def held(self) -> bool:
        return self.attempt_id is not None

    def read(self) -> Optional[Dict[str, Any]]:
        """Current lease contents, {} for an unreadable lease, None when absent."""
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            log_message(f"Lease file {self.path} is unreadable: {e}", "WARNING")
            return {}

    def _holder_alive(self, data: Dict[str, Any]) -> bool:
        if data.get("hostname") != socket.gethostname():
            # Cannot probe a process on another host
            return True
        try:
            return _pid_alive(int(data.get("pid", 0)))
        except (TypeError, ValueError):
            return False

    def _write(self, data: Dict[str, Any], exclusive: bool = False) -> None:
        if exclusive:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            with os.fdopen(fd, 'w') as f:
                json.dump(data, f, indent=2)
            return
        tmp_path = self.path.with_suffix(".lease.tmp")
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    def acquire(self, attempt_id: str, command: str = "update") -> None:
        """
        Take the lease for this service set.

        Raises:
            LeaseHeld: A live process holds the lease
            AbandonedAttempt: A dead holder left the lease after mutating services
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "attempt_id": attempt_id,
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "started_at": time.time(),
            "phase": "idle",
            "command": command,
        }

        for _ in range(2):
            try:
                self._write(data, exclusive=True)
                self.attempt_id = attempt_id
                log_message(f"Acquired lifecycle lease {self.path} ({command})", "DEBUG")
                return
            except FileExistsError:
                existing = self.read()
                if existing is None:
                    continue
                self._resolve_existing(existing)

        raise LeaseHeld(f"Could not acquire lease {self.path}")

    def _resolve_existing(self, existing: Dict[str, Any]) -> None:
        phase = existing.get("phase", "unknown")
        holder = existing.get("attempt_id", "unknown")

        if phase == HALTED_PHASE:
            raise AbandonedAttempt(
                f"Attempt {holder} halted after an unrecoverable rollback; "
                f"inspect the deployment and run --release-lock",
                existing
            )
        if existing and self._holder_alive(existing):
            raise LeaseHeld(
                f"Attempt {holder} ({existing.get('command', 'unknown')}) is running "
                f"as pid {existing.get('pid')} on {existing.get('hostname')}"
            )
        if phase in RECLAIMABLE_PHASES:
            log_message(f"⚠ Reclaiming stale lease of attempt {holder} (phase {phase})", "WARNING")
            self.path.unlink(missing_ok=True)
            return
        raise AbandonedAttempt(
            f"Attempt {holder} was interrupted in phase '{phase}'; "
            f"services may be partially updated. Resolve manually and run --release-lock",
            existing
        )

    def update_phase(self, phase: str) -> None:
        if not self.held:
            return
        data = self.read() or {}
        data["phase"] = phase
        data["updated_at"] = time.time()
        self._write(data)

    def release(self) -> None:
        if not self.held:
            return
        self.path.unlink(missing_ok=True)
        log_message(f"Released lifecycle lease {self.path}", "DEBUG")
        self.attempt_id = None

    def halt(self, reason: str) -> None:
        """Keep the lease in the halted phase so automation stops until an operator intervenes."""
        if not self.held:
            return
        data = self.read() or {}
        data["phase"] = HALTED_PHASE
        data["halt_reason"] = reason
        data["updated_at"] = time.time()
        self._write(data)
        log_message(f"✗ Lease {self.path} left in place: {reason}", "ERROR")
        self.attempt_id = None

    def force_release(self) -> bool:
        """Operator resolution: remove whatever lease exists. Returns False when none did."""
        existing = self.read()
        if existing is None:
            log_message(f"No lease present at {self.path}")
            return False
        self.path.unlink(missing_ok=True)
        log_message(f"✓ Removed lease of attempt {existing.get('attempt_id', 'unknown')} "
                    f"(phase {existing.get('phase', 'unknown')})")
        self.attempt_id = None
        return True
