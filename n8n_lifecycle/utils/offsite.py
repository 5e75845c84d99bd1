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

import os
import shutil
import tarfile
import tempfile

from .container_runtime import ContainerRuntime
from .errors import CommandError
from .index import log_message
from .snapshot_manager import RestorePoint

UPLOAD_TIMEOUT = 3600


class OffsiteUploader:
    """Best-effort copy of verified restore points to OCI Object Storage via the oci CLI."""

    def __init__(self, runtime: ContainerRuntime, bucket: str = "", region: str = "us-ashburn-1",
                 prefix: str = "daily", cli: str = "oci", timeout: float = UPLOAD_TIMEOUT):
        self.runtime = runtime
        self.bucket = bucket
        self.region = region
        self.prefix = prefix
        self.cli = cli
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.bucket)

    def object_name(self, point: RestorePoint) -> str:
        return f"{self.prefix}/n8n_backup_{point.id}.tar.gz"

    def upload(self, point: RestorePoint) -> bool:
        """
        Archive the restore point directory and put it in the bucket.

        Returns:
            bool: True when uploaded; failures are logged, never raised
        """
        if not self.enabled:
            log_message("Off-site upload not configured", "DEBUG")
            return False
        if shutil.which(self.cli) is None:
            log_message(f"⚠ {self.cli} CLI not installed, skipping off-site upload", "WARNING")
            return False

        log_message(f"Uploading restore point {point.id} to bucket {self.bucket}...")
        try:
            with tempfile.TemporaryDirectory() as tmp_dir:
                archive_path = os.path.join(tmp_dir, os.path.basename(self.object_name(point)))
                with tarfile.open(archive_path, "w:gz") as archive:
                    archive.add(point.path, arcname=os.path.basename(point.path))
                self.runtime.run([
                    self.cli, "os", "object", "put",
                    "--bucket-name", self.bucket,
                    "--file", archive_path,
                    "--name", self.object_name(point),
                    "--region", self.region
                ], timeout=self.timeout)
        except (CommandError, OSError, tarfile.TarError) as e:
            log_message(f"⚠ Failed to upload restore point {point.id}: {e}", "WARNING")
            return False

        log_message(f"✓ Restore point {point.id} uploaded as {self.object_name(point)}")
        return True
