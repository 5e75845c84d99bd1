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
Thin wrapper over the container runtime CLI (podman or docker) and its
compose front-end. Every call is a blocking subprocess; failures raise
CommandError so callers decide whether a failure matters.
"""

import gzip
import os
import shutil
import subprocess
import tempfile
from typing import Dict, List, Optional, Tuple

from .errors import CommandError
from .index import log_message

DEFAULT_TIMEOUT = 300


def _reap(process: subprocess.Popen) -> None:
    """Kill and wait for a streaming child that is still running after an I/O error."""
    if process.poll() is None:
        process.kill()
        process.wait()


class ContainerRuntime:
    """Runs container and compose commands for one project directory."""

    def __init__(self, runtime: str = "podman", compose_command: Optional[List[str]] = None,
                 project_root: Optional[str] = None):
        self.runtime = runtime
        self.compose_command = list(compose_command or [f"{runtime}-compose"])
        self.project_root = project_root

    def run(self, command: List[str], check: bool = True, timeout: Optional[float] = DEFAULT_TIMEOUT,
            cwd: Optional[str] = None, quiet: bool = False) -> subprocess.CompletedProcess:
        """Execute a command and return the completed process."""
        if not quiet:
            log_message(f"Running: {' '.join(command)}", "DEBUG")
        try:
            result = subprocess.run(
                command,
                cwd=cwd or self.project_root,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except FileNotFoundError:
            raise CommandError(command, None, f"{command[0]} not found")
        except subprocess.TimeoutExpired:
            raise CommandError(command, None, f"timed out after {timeout}s")

        if check and result.returncode != 0:
            raise CommandError(command, result.returncode, result.stderr)
        return result

    # --- Compose ---
    def compose(self, compose_file: str, *args: str, timeout: Optional[float] = DEFAULT_TIMEOUT) -> subprocess.CompletedProcess:
        return self.run(self.compose_command + ["-f", compose_file] + list(args), timeout=timeout)

    # --- Containers ---
    def is_running(self, container: str) -> bool:
        """True when a container with exactly this name is running."""
        result = self.run(
            [self.runtime, "ps", "--filter", f"name=^{container}$", "--format", "{{.Names}}"],
            quiet=True
        )
        return container in result.stdout.split()

    def container_exists(self, container: str) -> bool:
        """True when a container with exactly this name exists, running or stopped."""
        result = self.run(
            [self.runtime, "ps", "-a", "--filter", f"name=^{container}$", "--format", "{{.Names}}"],
            quiet=True
        )
        return container in result.stdout.split()

    def list_containers(self) -> List[Dict[str, str]]:
        """List running containers with their status and image."""
        result = self.run(
            [self.runtime, "ps", "--format", "{{.Names}}\t{{.Status}}\t{{.Image}}"],
            quiet=True
        )
        containers = []
        for line in result.stdout.splitlines():
            parts = line.split("\t")
            if not parts or not parts[0].strip():
                continue
            parts += [""] * (3 - len(parts))
            containers.append({"name": parts[0], "status": parts[1], "image": parts[2]})
        return containers

    def exec(self, container: str, command: List[str], check: bool = True,
             timeout: Optional[float] = DEFAULT_TIMEOUT) -> subprocess.CompletedProcess:
        return self.run([self.runtime, "exec", container] + list(command), check=check, timeout=timeout)

    def copy_from(self, container: str, source: str, destination: str) -> None:
        self.run([self.runtime, "cp", f"{container}:{source}", destination])

    def exec_to_file(self, container: str, command: List[str], destination: str,
                     compress: bool = True) -> int:
        """
        Stream the stdout of a command run inside a container into a file.

        Returns:
            int: Size in bytes of the written file
        """
        full_command = [self.runtime, "exec", container] + list(command)
        log_message(f"Running: {' '.join(full_command)} > {destination}", "DEBUG")
        opener = gzip.open if compress else open
        with tempfile.TemporaryFile() as err:
            try:
                with opener(destination, "wb") as out:
                    process = subprocess.Popen(full_command, stdout=subprocess.PIPE,
                                               stderr=err, cwd=self.project_root)
                    try:
                        shutil.copyfileobj(process.stdout, out)
                        process.stdout.close()
                        process.wait()
                    finally:
                        _reap(process)
            except FileNotFoundError:
                raise CommandError(full_command, None, f"{self.runtime} not found")

            if process.returncode != 0:
                err.seek(0)
                raise CommandError(full_command, process.returncode, err.read().decode(errors="replace"))
        return os.path.getsize(destination)

    def exec_from_file(self, container: str, command: List[str], source: str,
                       decompress: bool = True) -> None:
        """Feed a (optionally gzipped) file into the stdin of a command run inside a container."""
        full_command = [self.runtime, "exec", "-i", container] + list(command)
        log_message(f"Running: {' '.join(full_command)} < {source}", "DEBUG")
        opener = gzip.open if decompress else open
        # stderr goes to a temp file so a chatty command cannot block on a full pipe
        with tempfile.TemporaryFile() as err:
            try:
                with opener(source, "rb") as src:
                    process = subprocess.Popen(full_command, stdin=subprocess.PIPE,
                                               stdout=subprocess.DEVNULL, stderr=err,
                                               cwd=self.project_root)
                    try:
                        shutil.copyfileobj(src, process.stdin)
                        process.stdin.close()
                        process.wait()
                    finally:
                        _reap(process)
            except FileNotFoundError:
                raise CommandError(full_command, None, f"{self.runtime} not found")

            if process.returncode != 0:
                err.seek(0)
                raise CommandError(full_command, process.returncode, err.read().decode(errors="replace"))

    # --- Images ---
    def prune_images(self) -> None:
        self.run([self.runtime, "image", "prune", "-f"])

    def list_images(self, repository: str) -> List[str]:
        """Image IDs of a repository, newest first."""
        result = self.run(
            [self.runtime, "images", "--filter", f"reference={repository}", "--format", "{{.ID}}"],
            quiet=True
        )
        seen = []
        for image_id in result.stdout.split():
            if image_id not in seen:
                seen.append(image_id)
        return seen

    def remove_image(self, image_id: str) -> None:
        self.run([self.runtime, "rmi", image_id])

    def container_image(self, container: str) -> Tuple[str, str]:
        """(image ID, image reference) a container was created from."""
        result = self.run(
            [self.runtime, "inspect", "--format", "{{.Image}}|{{.Config.Image}}", container],
            quiet=True
        )
        image_id, _, reference = result.stdout.strip().partition("|")
        return image_id, reference

    def tag_image(self, image_id: str, reference: str) -> None:
        self.run([self.runtime, "tag", image_id, reference])
