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
Utilities for the n8n lifecycle controller.

This module provides the components the lifecycle orchestrator drives.
"""

from .index import log_message, get_timestamp, setup_global_logging
from .config import Settings, load_settings, generate_credentials
from .errors import (
    LifecycleError,
    CommandError,
    SnapshotIncomplete,
    RestoreDuringActiveWrites,
    HealthCheckTimeout,
    VersionUnknown,
    RollbackHealthFailure,
    MissingCertificates,
    LeaseHeld,
    AbandonedAttempt,
    RestorePointNotFound,
    InvalidTransition,
    RestoreModeMismatch
)
from .retry import poll_until
from .lease import LifecycleLease
from .container_runtime import ContainerRuntime
from .service_controller import ServiceController, ServiceSet, ServiceSpec
from .snapshot_manager import SnapshotManager, RestorePoint, Artifact, ArtifactKind
from .version_resolver import VersionResolver, VersionCheck, UNKNOWN_VERSION
from .notifier import Notifier
from .offsite import OffsiteUploader
from .report import AttemptReport

__all__ = [
    'log_message',
    'get_timestamp',
    'setup_global_logging',
    'Settings',
    'load_settings',
    'generate_credentials',
    'LifecycleError',
    'CommandError',
    'SnapshotIncomplete',
    'RestoreDuringActiveWrites',
    'HealthCheckTimeout',
    'VersionUnknown',
    'RollbackHealthFailure',
    'MissingCertificates',
    'LeaseHeld',
    'AbandonedAttempt',
    'RestorePointNotFound',
    'InvalidTransition',
    'RestoreModeMismatch',
    'poll_until',
    'LifecycleLease',
    'ContainerRuntime',
    'ServiceController',
    'ServiceSet',
    'ServiceSpec',
    'SnapshotManager',
    'RestorePoint',
    'Artifact',
    'ArtifactKind',
    'VersionResolver',
    'VersionCheck',
    'UNKNOWN_VERSION',
    'Notifier',
    'OffsiteUploader',
    'AttemptReport'
]
