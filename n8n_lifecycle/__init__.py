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
n8n Lifecycle Controller

Automates update, backup and restore of a self-hosted n8n deployment:
check versions, capture a restore point, pull and restart, verify health,
then commit or roll back.
"""

__version__ = "1.0.0"

from .lifecycle import (
    LifecycleOrchestrator,
    LifecycleState,
    AttemptOutcome,
    UpdateAttempt,
    VALID_TRANSITIONS
)
from .utils import (
    log_message,
    Settings,
    load_settings,
    ServiceController,
    ServiceSet,
    SnapshotManager,
    RestorePoint,
    VersionResolver,
    LifecycleLease,
    AttemptReport
)
