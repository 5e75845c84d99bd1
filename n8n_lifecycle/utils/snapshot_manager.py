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
Snapshot Manager

Timestamped restore points of an n8n deployment. Each restore point is a
directory under the backup path holding the captured artifacts and a
backup_info.json manifest.

Key Features:
- Per-artifact capture with mandatory kinds declared by the service set
- Integrity verification (non-empty, decompressible, parseable, checksum)
- Destructive restore guarded by a stopped-writers precondition
- Retention pruning by count and age

Usage:
    from n8n_lifecycle.utils.snapshot_manager import SnapshotManager

    snapshots = SnapshotManager(settings, runtime, controller, stack)
    point = snapshots.capture()
    if snapshots.verify(point):
        ...
    snapshots.restore(point)
"""

import datetime
import glob
import gzip
import hashlib
import json
import os
import re
import shutil
import tarfile
import time
from dataclasses import dataclass, asdict, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Settings
from .container_runtime import ContainerRuntime
from .errors import (
    CommandError, HealthCheckTimeout, RestoreDuringActiveWrites, RestoreModeMismatch,
    RestorePointNotFound, SnapshotIncomplete
)
from .index import get_timestamp, log_message
from .service_controller import ServiceController

MANIFEST_NAME = "backup_info.json"
POINT_ID_PATTERN = re.compile(r"^(\d{8}_\d{6})(?:_(\d+))?$")
CHUNK_SIZE = 65536


class ArtifactKind(Enum):
    WORKFLOW_EXPORT = "workflow-export"
    CREDENTIAL_EXPORT = "credential-export"
    DATABASE_DUMP = "database-dump"
    DATABASE_GLOBALS = "database-globals"
    FILESYSTEM_ARCHIVE = "filesystem-archive"
    CONFIG_ARCHIVE = "config-archive"
    CERTIFICATE_ARCHIVE = "certificate-archive"


class ArtifactSkipped(Exception):
    """The artifact kind does not apply to this deployment."""
    pass


@dataclass
class Artifact:
    """One captured file of a restore point."""
    kind: str
    file_name: str
    size: int
    checksum: str
    mandatory: bool = False
    verified: Optional[bool] = None
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Artifact':
        return cls(**data)


@dataclass
class RestorePoint:
    """A timestamped bundle of artifacts sufficient to recreate service state."""
    id: str
    created_at: float
    mode: str
    path: str
    app_version: str = "unknown"
    artifacts: List[Artifact] = field(default_factory=list)
    mandatory: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    verified: Optional[bool] = None
    verified_at: Optional[float] = None

    def artifact(self, kind: ArtifactKind) -> Optional[Artifact]:
        for artifact in self.artifacts:
            if artifact.kind == kind.value:
                return artifact
        return None

    def artifact_path(self, artifact: Artifact) -> str:
        return os.path.join(self.path, artifact.file_name)

    @property
    def created(self) -> datetime.datetime:
        return datetime.datetime.fromtimestamp(self.created_at)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created"] = self.created.isoformat(timespec="seconds")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RestorePoint':
        data = dict(data)
        data.pop("created", None)
        data["artifacts"] = [Artifact.from_dict(a) for a in data.get("artifacts", [])]
        return cls(**data)


def _id_sort_key(point_id: str) -> Tuple[str, int]:
    match = POINT_ID_PATTERN.match(point_id)
    if not match:
        return point_id, 0
    return match.group(1), int(match.group(2) or 0)


def _sha256(path: str) -> str:
    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def _drain(stream) -> None:
    """Read a stream to the end in fixed-size chunks, surfacing decompression errors."""
    while stream.read(CHUNK_SIZE):
        pass


def _extract_all(archive: tarfile.TarFile, path: str) -> None:
    if hasattr(tarfile, "data_filter"):
        archive.extractall(path=path, filter="data")
    else:
        archive.extractall(path=path)


class SnapshotManager:
    """
    Captures, verifies, restores and prunes restore points.

    Mandatory artifact kinds come from the active service set; every other
    kind is best-effort and only recorded as failed or skipped.
    """

    def __init__(self, settings: Settings, runtime: ContainerRuntime,
                 controller: ServiceController, stack: Dict[str, Any],
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.runtime = runtime
        self.controller = controller
        self.service_set = controller.service_set
        self.stack = stack
        self.clock = clock
        self.backup_root = Path(settings.backup_path)
        self.project_root = Path(settings.project_root)

    # --- Helpers ---
    def _new_point_id(self) -> str:
        base = get_timestamp(datetime.datetime.fromtimestamp(self.clock()))
        taken = [p.name for p in self.backup_root.iterdir()
                 if p.is_dir() and POINT_ID_PATTERN.match(p.name)]
        if not taken:
            return base

        latest_base, latest_suffix = _id_sort_key(max(taken, key=_id_sort_key))
        if latest_base < base:
            return base
        # Same second (or clock went backwards): continue after the newest point
        return f"{latest_base}_{latest_suffix + 1}"

    def _manifest_path(self, point: RestorePoint) -> Path:
        return Path(point.path) / MANIFEST_NAME

    def _save_manifest(self, point: RestorePoint) -> None:
        tmp_path = self._manifest_path(point).with_suffix(".tmp")
        with open(tmp_path, 'w') as f:
            json.dump(point.to_dict(), f, indent=2)
        os.replace(tmp_path, self._manifest_path(point))

    def _load_manifest(self, point_dir: Path) -> RestorePoint:
        with open(point_dir / MANIFEST_NAME, 'r') as f:
            point = RestorePoint.from_dict(json.load(f))
        point.path = str(point_dir)
        return point

    def _record(self, point_dir: Path, kind: ArtifactKind, file_name: str) -> Artifact:
        path = point_dir / file_name
        return Artifact(
            kind=kind.value,
            file_name=file_name,
            size=path.stat().st_size,
            checksum=_sha256(str(path)),
            mandatory=kind.value in self.service_set.mandatory_artifacts
        )

    def _archive(self, destination: Path, members: List[str]) -> None:
        with tarfile.open(destination, "w:gz") as archive:
            for member in members:
                archive.add(str(self.project_root / member), arcname=member)

    # --- Per-artifact capture ---
    def _export_from_app(self, point_dir: Path, point_id: str, command_key: str, prefix: str) -> str:
        app = self.service_set.app
        if not self.controller.is_running(app.name):
            raise CommandError([app.container], None, f"{app.name} is not running")

        export_dir = self.stack["paths"]["container_export_dir"]
        file_name = f"{prefix}_{point_id}.json"
        container_path = f"{export_dir}/{file_name}"
        self.runtime.exec(app.container, ["mkdir", "-p", export_dir])
        try:
            self.runtime.exec(app.container, list(self.stack["commands"][command_key]) + [f"--output={container_path}"])
            self.runtime.copy_from(app.container, container_path, str(point_dir / file_name))
        finally:
            # The export dir sits inside the bind-mounted data dir
            try:
                self.runtime.exec(app.container, ["rm", "-f", container_path])
            except CommandError as e:
                log_message(f"Failed to remove {container_path} from {app.container}: {e}", "WARNING")
        return file_name

    def _capture_workflows(self, point_dir: Path, point_id: str) -> str:
        return self._export_from_app(point_dir, point_id, "export_workflows", "workflows")

    def _capture_credentials(self, point_dir: Path, point_id: str) -> str:
        return self._export_from_app(point_dir, point_id, "export_credentials", "credentials")

    def _capture_database(self, point_dir: Path, point_id: str) -> str:
        database = self.service_set.database
        if database is None:
            raise ArtifactSkipped(f"no database in {self.service_set.mode} mode")
        if not self.controller.is_running(database.name):
            raise CommandError([database.container], None, f"{database.name} is not running")

        file_name = f"database_{point_id}.sql.gz"
        self.runtime.exec_to_file(
            database.container,
            ["pg_dump", "-U", self.settings.postgres_user, self.settings.postgres_db],
            str(point_dir / file_name)
        )
        return file_name

    def _capture_database_globals(self, point_dir: Path, point_id: str) -> str:
        """Roles and grants; kept for manual recovery, never loaded by restore."""
        database = self.service_set.database
        if database is None:
            raise ArtifactSkipped(f"no database in {self.service_set.mode} mode")
        if not self.controller.is_running(database.name):
            raise CommandError([database.container], None, f"{database.name} is not running")

        file_name = f"database_globals_{point_id}.sql.gz"
        self.runtime.exec_to_file(
            database.container,
            ["pg_dumpall", "-U", self.settings.postgres_user, "--globals-only"],
            str(point_dir / file_name)
        )
        return file_name

    def _capture_filesystem(self, point_dir: Path, point_id: str) -> str:
        data_dir = self.stack["paths"]["data_dir"]
        if not (self.project_root / data_dir).is_dir():
            raise FileNotFoundError(f"data directory {self.project_root / data_dir} does not exist")
        file_name = f"n8n_data_{point_id}.tar.gz"
        self._archive(point_dir / file_name, [data_dir])
        return file_name

    def _capture_config(self, point_dir: Path, point_id: str) -> str:
        members = []
        for pattern in self.stack["paths"]["config_paths"]:
            for match in sorted(glob.glob(str(self.project_root / pattern))):
                members.append(os.path.relpath(match, self.project_root))
        if not members:
            raise ArtifactSkipped("no configuration files present")
        file_name = f"config_{point_id}.tar.gz"
        self._archive(point_dir / file_name, members)
        return file_name

    def _capture_certificates(self, point_dir: Path, point_id: str) -> str:
        ssl_dir = self.stack["paths"]["ssl_dir"]
        if not (self.project_root / ssl_dir).is_dir():
            raise ArtifactSkipped("no certificates on disk")
        file_name = f"ssl_certificates_{point_id}.tar.gz"
        self._archive(point_dir / file_name, [ssl_dir])
        return file_name

    # --- Public API ---
    def capture(self, app_version: str = "unknown") -> RestorePoint:
        """
        Capture every applicable artifact into a new restore point.

        Raises:
            SnapshotIncomplete: A mandatory artifact could not be captured
        """
        self.backup_root.mkdir(parents=True, exist_ok=True)
        point_id = self._new_point_id()
        point_dir = self.backup_root / point_id
        point_dir.mkdir(parents=True)

        point = RestorePoint(
            id=point_id,
            created_at=self.clock(),
            mode=self.service_set.mode,
            path=str(point_dir),
            app_version=app_version,
            mandatory=sorted(self.service_set.mandatory_artifacts)
        )
        log_message(f"Creating restore point {point_id} ({point.mode} mode)...")

        steps = [
            (ArtifactKind.WORKFLOW_EXPORT, self._capture_workflows),
            (ArtifactKind.CREDENTIAL_EXPORT, self._capture_credentials),
            (ArtifactKind.DATABASE_DUMP, self._capture_database),
            (ArtifactKind.DATABASE_GLOBALS, self._capture_database_globals),
            (ArtifactKind.FILESYSTEM_ARCHIVE, self._capture_filesystem),
            (ArtifactKind.CONFIG_ARCHIVE, self._capture_config),
            (ArtifactKind.CERTIFICATE_ARCHIVE, self._capture_certificates),
        ]

        for kind, capture_step in steps:
            try:
                file_name = capture_step(point_dir, point_id)
                artifact = self._record(point_dir, kind, file_name)
                point.artifacts.append(artifact)
                log_message(f"✓ {kind.value}: {file_name} ({artifact.size} bytes)")
            except ArtifactSkipped as e:
                point.skipped[kind.value] = str(e)
                log_message(f"Skipping {kind.value}: {e}")
            except (CommandError, OSError, tarfile.TarError) as e:
                point.failed[kind.value] = str(e)
                level = "ERROR" if kind.value in self.service_set.mandatory_artifacts else "WARNING"
                log_message(f"✗ {kind.value} failed: {e}", level)

        captured = {a.kind for a in point.artifacts}
        missing = sorted(k for k in self.service_set.mandatory_artifacts if k not in captured)
        if missing:
            log_message(f"Restore point {point_id} is missing mandatory artifacts, discarding", "ERROR")
            shutil.rmtree(point_dir, ignore_errors=True)
            raise SnapshotIncomplete(missing, {k: point.failed.get(k, point.skipped.get(k, "not captured"))
                                               for k in missing})

        self._save_manifest(point)
        log_message(f"✓ Restore point {point_id} created with {len(point.artifacts)} artifacts")
        return point

    def _check_artifact(self, point: RestorePoint, artifact: Artifact) -> str:
        """Return an empty string when the artifact is intact, otherwise the problem."""
        path = point.artifact_path(artifact)
        if not os.path.isfile(path):
            return "file missing"
        if os.path.getsize(path) == 0:
            return "file is empty"

        try:
            if path.endswith(".tar.gz"):
                with tarfile.open(path, "r:gz") as archive:
                    for member in archive:
                        if member.isfile():
                            _drain(archive.extractfile(member))
            elif path.endswith(".gz"):
                with gzip.open(path, "rb") as f:
                    _drain(f)
            elif path.endswith(".json"):
                with open(path, 'r') as f:
                    json.load(f)
        except (OSError, EOFError, tarfile.TarError, ValueError) as e:
            return f"integrity check failed: {e}"

        if artifact.checksum and _sha256(path) != artifact.checksum:
            return "checksum mismatch"
        return ""

    def verify(self, point: RestorePoint) -> bool:
        """
        Verify every artifact of a restore point.

        Returns:
            bool: True only when every artifact is intact and every mandatory
                  kind is present; the result is recorded in the manifest
        """
        log_message(f"Verifying restore point {point.id}...")
        problems = 0

        for artifact in point.artifacts:
            error = self._check_artifact(point, artifact)
            artifact.verified = not error
            artifact.error = error
            if error:
                problems += 1
                log_message(f"✗ {artifact.file_name}: {error}", "WARNING")

        present = {a.kind for a in point.artifacts}
        for kind in point.mandatory:
            if kind not in present:
                problems += 1
                log_message(f"✗ mandatory artifact {kind} is absent", "WARNING")

        point.verified = problems == 0
        point.verified_at = self.clock()
        try:
            self._save_manifest(point)
        except OSError as e:
            log_message(f"Failed to record verification result for {point.id}: {e}", "WARNING")

        if point.verified:
            log_message(f"✓ Restore point {point.id} verification passed")
        else:
            log_message(f"⚠ Restore point {point.id} verification found {problems} issues", "WARNING")
        return point.verified

    def _require_writers_stopped(self, step: str) -> None:
        writers = [s.name for s in self.service_set.writers()]
        if not self.controller.confirm_stopped(writers):
            raise RestoreDuringActiveWrites(
                f"Refusing to {step}: write-capable services ({', '.join(writers)}) are not confirmed stopped"
            )

    def _restore_filesystem(self, point: RestorePoint, artifact: Artifact) -> None:
        data_dir = self.project_root / self.stack["paths"]["data_dir"]
        self._require_writers_stopped("replace the data directory")

        log_message(f"Restoring {data_dir} from {artifact.file_name}...")
        if data_dir.exists():
            for child in data_dir.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        with tarfile.open(point.artifact_path(artifact), "r:gz") as archive:
            _extract_all(archive, str(self.project_root))
        log_message("✓ Data directory restored")

    def _restore_database(self, point: RestorePoint, artifact: Artifact) -> None:
        database = self.service_set.database
        if database is None:
            log_message(f"Restore point {point.id} has a database dump but "
                        f"{self.service_set.mode} mode has no database, skipping", "WARNING")
            return

        self.controller.start(database.name)
        if not self.controller.wait_healthy(database.name, self.settings.health_max_attempts,
                                            self.settings.health_interval):
            raise HealthCheckTimeout([database.name])

        user, db = self.settings.postgres_user, self.settings.postgres_db
        self._require_writers_stopped("drop the database")
        log_message(f"Recreating database {db}...")
        self.runtime.exec(database.container, ["dropdb", "-U", user, "--if-exists", db])
        self.runtime.exec(database.container, ["createdb", "-U", user, db])

        log_message(f"Loading {artifact.file_name}...")
        self.runtime.exec_from_file(database.container, ["psql", "-q", "-U", user, db],
                                    point.artifact_path(artifact))
        log_message("✓ Database restored")

    def restore(self, point: RestorePoint) -> None:
        """
        Overwrite live data and database contents from a restore point.

        Write-capable services must already be stopped; this is re-checked
        before every destructive step.

        Raises:
            RestoreModeMismatch: The point was taken in another deployment mode
            RestoreDuringActiveWrites: Writers are running or their state is unknown
            SnapshotIncomplete: The point lacks the filesystem archive
        """
        log_message(f"Restoring from restore point {point.id}...")
        if point.mode != self.service_set.mode:
            raise RestoreModeMismatch(point.id, point.mode, self.service_set.mode)
        self._require_writers_stopped("restore")

        filesystem = point.artifact(ArtifactKind.FILESYSTEM_ARCHIVE)
        if filesystem is None:
            raise SnapshotIncomplete([ArtifactKind.FILESYSTEM_ARCHIVE.value])

        self._restore_filesystem(point, filesystem)

        dump = point.artifact(ArtifactKind.DATABASE_DUMP)
        if dump is not None:
            self._restore_database(point, dump)
        elif self.service_set.database is not None:
            log_message(f"Restore point {point.id} has no database dump; database left as is", "WARNING")

        log_message(f"✓ Restore from {point.id} completed")

    def list(self) -> List[RestorePoint]:
        """All readable restore points, newest first."""
        if not self.backup_root.exists():
            return []
        points = []
        for point_dir in self.backup_root.iterdir():
            if not point_dir.is_dir() or not (point_dir / MANIFEST_NAME).exists():
                continue
            try:
                points.append(self._load_manifest(point_dir))
            except (OSError, ValueError, TypeError) as e:
                log_message(f"Skipping unreadable restore point {point_dir.name}: {e}", "WARNING")
        points.sort(key=lambda p: _id_sort_key(p.id), reverse=True)
        return points

    def get(self, point_id: str) -> RestorePoint:
        point_dir = self.backup_root / point_id
        if not (point_dir / MANIFEST_NAME).exists():
            raise RestorePointNotFound(f"Restore point {point_id} not found in {self.backup_root}")
        return self._load_manifest(point_dir)

    def latest(self) -> Optional[RestorePoint]:
        points = self.list()
        return points[0] if points else None

    def prune(self, retention_days: int, retention_count: int,
              now: Optional[float] = None) -> List[str]:
        """
        Delete old restore points, oldest first.

        With retention_count > 0 the newest retention_count points are kept and
        the rest are deleted. With retention_count == 0 points older than
        retention_days are deleted. The newest point and the newest verified
        point are always kept.

        Returns:
            list: Identifiers of deleted restore points
        """
        points = self.list()
        if not points:
            log_message("No restore points to prune")
            return []

        now = self.clock() if now is None else now
        protected = {points[0].id}
        newest_verified = next((p for p in points if p.verified), None)
        if newest_verified:
            protected.add(newest_verified.id)

        if retention_count > 0:
            candidates = points[retention_count:]
        else:
            horizon = now - retention_days * 86400
            candidates = [p for p in points if p.created_at < horizon]

        deleted = []
        for point in reversed(candidates):
            if point.id in protected:
                continue
            try:
                shutil.rmtree(point.path)
                deleted.append(point.id)
                log_message(f"Deleted old restore point: {point.id}")
            except OSError as e:
                log_message(f"Failed to delete restore point {point.id}: {e}", "WARNING")

        if deleted:
            log_message(f"✓ Cleaned up {len(deleted)} old restore points")
        else:
            log_message("No old restore points to clean up")
        return deleted
