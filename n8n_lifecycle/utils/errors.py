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
Exceptions raised by the lifecycle controller.

Only conditions a caller has to decide on are raised; polling helpers and
best-effort steps report failure through their return values instead.
"""

from typing import List, Optional


class LifecycleError(Exception):
    """Base class for lifecycle controller failures."""
    pass


class CommandError(LifecycleError):
    """An external tool failed, timed out, or is not installed."""

    def __init__(self, command: List[str], returncode: Optional[int] = None, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = f" (exit {returncode})" if returncode is not None else ""
        message = f"Command failed{detail}: {' '.join(self.command)}"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)


class SnapshotIncomplete(LifecycleError):
    """A mandatory artifact could not be captured; no update may proceed."""

    def __init__(self, missing: List[str], reasons: Optional[dict] = None):
        self.missing = list(missing)
        self.reasons = dict(reasons or {})
        super().__init__(f"Restore point is missing mandatory artifacts: {', '.join(self.missing)}")


class RestoreDuringActiveWrites(LifecycleError):
    """Refused to restore while write-capable services may still be running."""
    pass


class HealthCheckTimeout(LifecycleError):
    """Bounded health polling was exhausted without a healthy result."""

    def __init__(self, services: List[str]):
        self.services = list(services)
        super().__init__(f"Health check timed out for: {', '.join(self.services)}")


class VersionUnknown(LifecycleError):
    """A version could not be determined (service unreachable, network or parse failure)."""
    pass


class RollbackHealthFailure(LifecycleError):
    """Services did not come back healthy after a rollback; manual intervention required."""
    pass


class MissingCertificates(LifecycleError):
    """The edge proxy was asked to start before its certificates exist on disk."""

    def __init__(self, service: str, missing: List[str]):
        self.service = service
        self.missing = list(missing)
        super().__init__(f"Refusing to start {service}: missing certificate files {', '.join(self.missing)}")


class LeaseHeld(LifecycleError):
    """Another lifecycle attempt currently holds the lease for this service set."""
    pass


class AbandonedAttempt(LifecycleError):
    """A previous attempt left its lease behind and needs operator resolution."""

    def __init__(self, message: str, lease: Optional[dict] = None):
        self.lease = dict(lease or {})
        super().__init__(message)


class RestorePointNotFound(LifecycleError):
    """The requested restore point does not exist."""
    pass


class InvalidTransition(LifecycleError):
    """The lifecycle state machine was asked to make a transition it does not allow."""
    pass


class RestoreModeMismatch(LifecycleError):
    """A restore point was taken in a different deployment mode than the one it is restored into."""

    def __init__(self, point_id: str, point_mode: str, deployment_mode: str):
        self.point_id = point_id
        self.point_mode = point_mode
        self.deployment_mode = deployment_mode
        super().__init__(f"Restore point {point_id} was taken in {point_mode} mode, "
                         f"refusing to restore it into a {deployment_mode} deployment")
