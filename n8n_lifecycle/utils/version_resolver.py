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

import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional

import requests

from .container_runtime import ContainerRuntime
from .errors import CommandError, VersionUnknown
from .index import log_message

UNKNOWN_VERSION = "unknown"
VERSION_PATTERN = re.compile(r"\d+\.\d+\.\d+")


@dataclass
class VersionCheck:
    current: str
    latest: str

    @property
    def update_available(self) -> bool:
        if UNKNOWN_VERSION in (self.current, self.latest):
            return False
        return self.current != self.latest


def parse_version(text: str) -> str:
    """Extract the first x.y.z version from command output or a release tag."""
    match = VERSION_PATTERN.search(text or "")
    if not match:
        raise VersionUnknown(f"No version found in {text!r}")
    return match.group(0)


class VersionResolver:
    """
    Resolves the running and the latest published n8n versions.

    Both lookups fail closed: any error yields "unknown", and an unknown
    version never makes an update available.
    """

    def __init__(self, runtime: ContainerRuntime, container: str, version_command: List[str],
                 releases_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.runtime = runtime
        self.container = container
        self.version_command = list(version_command)
        self.releases_url = releases_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def query_current_version(self) -> str:
        """Ask the running container for its version; raises VersionUnknown."""
        try:
            result = self.runtime.exec(self.container, self.version_command, timeout=self.timeout * 3)
        except CommandError as e:
            raise VersionUnknown(f"{self.container} did not report a version: {e}")
        return parse_version(result.stdout)

    def query_latest_version(self) -> str:
        """Ask the release feed for the latest tag; raises VersionUnknown."""
        try:
            response = self.session.get(
                self.releases_url,
                timeout=self.timeout,
                headers={"Accept": "application/vnd.github+json"}
            )
            response.raise_for_status()
            tag = response.json().get("tag_name") or ""
        except (requests.RequestException, ValueError, AttributeError) as e:
            raise VersionUnknown(f"Release lookup failed: {e}")
        # Tags look like "n8n@1.64.0"
        return parse_version(tag.split("@")[-1])

    def current_version(self) -> str:
        try:
            version = self.query_current_version()
            log_message(f"Current n8n version: {version}")
            return version
        except VersionUnknown as e:
            log_message(f"Could not determine current version: {e}", "WARNING")
            return UNKNOWN_VERSION

    def latest_version(self) -> str:
        try:
            version = self.query_latest_version()
            log_message(f"Latest n8n version: {version}")
            return version
        except VersionUnknown as e:
            log_message(f"Could not determine latest version: {e}", "WARNING")
            return UNKNOWN_VERSION

    def check(self) -> VersionCheck:
        """Query both versions concurrently."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            current = executor.submit(self.current_version)
            latest = executor.submit(self.latest_version)
            result = VersionCheck(current=current.result(), latest=latest.result())

        if result.update_available:
            log_message(f"Update available: {result.current} → {result.latest}")
        elif UNKNOWN_VERSION in (result.current, result.latest):
            log_message("⚠ Version information incomplete, not updating", "WARNING")
        else:
            log_message(f"✓ n8n is up to date ({result.current})")
        return result

    def is_update_available(self) -> bool:
        return self.check().update_available
