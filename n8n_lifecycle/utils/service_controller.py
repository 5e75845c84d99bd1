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
Service Controller

Starts, stops and health-polls the services of one ServiceSet through the
container runtime. Start/stop are idempotent, health polling is a fixed
bounded retry, and pulling images never touches running containers.

Usage:
    controller = ServiceController(runtime, service_set)
    controller.restart_all()
    results = controller.wait_all_healthy(max_attempts=30, interval=10)
"""

import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

import requests

from .container_runtime import ContainerRuntime
from .errors import CommandError, MissingCertificates
from .index import log_message
from .retry import poll_until

TIER_DATA = "data"
TIER_APP = "app"
TIER_EDGE = "edge"
TIER_ORDER = {TIER_DATA: 0, TIER_APP: 1, TIER_EDGE: 2}


@dataclass
class ServiceSpec:
    """One managed service and its health-check contract."""
    name: str
    tier: str
    container: str = ""
    health_command: List[str] = field(default_factory=list)
    health_url: str = ""
    writes: bool = False
    certificates: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.tier not in TIER_ORDER:
            raise ValueError(f"Unknown tier for service {self.name}: {self.tier}")
        if not self.container:
            self.container = self.name


@dataclass
class ServiceSet:
    """
    Named, ordered collection of services managed as a unit.

    Services are declared in startup order: data tier before the
    application, application before the edge proxy.
    """
    name: str
    mode: str
    compose_file: str
    services: List[ServiceSpec]
    mandatory_artifacts: Set[str] = field(default_factory=set)
    app_image: str = ""

    def __post_init__(self):
        ranks = [TIER_ORDER[s.tier] for s in self.services]
        if ranks != sorted(ranks):
            raise ValueError(f"Services of {self.name} are not declared in tier order: "
                             f"{', '.join(s.name for s in self.services)}")
        names = [s.name for s in self.services]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate service names in {self.name}")

    def get(self, name: str) -> ServiceSpec:
        for service in self.services:
            if service.name == name:
                return service
        raise KeyError(f"Service {name} is not part of {self.name}")

    def names(self) -> List[str]:
        return [s.name for s in self.services]

    def startup_order(self) -> List[ServiceSpec]:
        return list(self.services)

    def shutdown_order(self) -> List[ServiceSpec]:
        return list(reversed(self.services))

    def writers(self) -> List[ServiceSpec]:
        return [s for s in self.services if s.writes]

    def by_tier(self, tier: str) -> List[ServiceSpec]:
        return [s for s in self.services if s.tier == tier]

    @property
    def app(self) -> ServiceSpec:
        apps = self.by_tier(TIER_APP)
        if not apps:
            raise KeyError(f"{self.name} declares no application service")
        return apps[0]

    @property
    def database(self) -> Optional[ServiceSpec]:
        """The data-tier service that takes database dumps, if any."""
        for service in self.by_tier(TIER_DATA):
            if service.name in ("postgres", "postgresql", "db", "database"):
                return service
        return None


class ServiceController:
    """Controls the services of one ServiceSet through the container runtime."""

    def __init__(self, runtime: ContainerRuntime, service_set: ServiceSet,
                 sleep: Callable[[float], None] = time.sleep, http_timeout: float = 10.0):
        self.runtime = runtime
        self.service_set = service_set
        self.sleep = sleep
        self.http_timeout = http_timeout

    # --- Lifecycle ---
    def is_running(self, service_name: str) -> bool:
        service = self.service_set.get(service_name)
        return self.runtime.is_running(service.container)

    def missing_certificates(self, service_name: str) -> List[str]:
        service = self.service_set.get(service_name)
        return [path for path in service.certificates if not os.path.isfile(path)]

    def start(self, service_name: str) -> None:
        """Start a service; a running service is left untouched."""
        service = self.service_set.get(service_name)
        if self.runtime.is_running(service.container):
            log_message(f"{service_name} already running")
            return

        missing = self.missing_certificates(service_name)
        if missing:
            raise MissingCertificates(service_name, missing)

        log_message(f"Starting {service_name}...")
        self.runtime.compose(self.service_set.compose_file, "up", "-d", service.name)
        log_message(f"✓ Started {service_name}")

    def stop(self, service_name: str) -> None:
        """Stop a service; a stopped service is left untouched."""
        service = self.service_set.get(service_name)
        if not self.runtime.is_running(service.container):
            log_message(f"{service_name} already stopped")
            return

        log_message(f"Stopping {service_name}...")
        self.runtime.compose(self.service_set.compose_file, "stop", service.name)
        log_message(f"✓ Stopped {service_name}")

    def restart(self, service_name: str) -> None:
        self.stop(service_name)
        self.start(service_name)

    def start_all(self) -> None:
        for service in self.service_set.startup_order():
            self.start(service.name)

    def stop_all(self) -> None:
        for service in self.service_set.shutdown_order():
            self.stop(service.name)

    def stop_writers(self) -> None:
        for service in reversed(self.service_set.writers()):
            self.stop(service.name)

    def restart_all(self) -> None:
        """Stop everything in reverse order, then start in declared order."""
        log_message("Restarting services with current images...")
        self.stop_all()
        self.start_all()

    def confirm_stopped(self, service_names: List[str]) -> bool:
        """
        True only when every named service is positively known to be stopped.
        A runtime failure means the state cannot be confirmed.
        """
        for name in service_names:
            try:
                if self.is_running(name):
                    log_message(f"{name} is still running", "WARNING")
                    return False
            except CommandError as e:
                log_message(f"Cannot confirm {name} is stopped: {e}", "WARNING")
                return False
        return True

    def pull_latest_images(self, service_set: Optional[ServiceSet] = None) -> None:
        """Fetch updated images for the set; running containers are not touched."""
        service_set = service_set or self.service_set
        log_message(f"Pulling latest container images ({service_set.compose_file})...")
        self.runtime.compose(service_set.compose_file, "pull", timeout=1800)
        log_message("✓ Latest images pulled")

    def current_image(self, service_name: str) -> Optional[Tuple[str, str]]:
        """(image ID, reference) of a service's container, None when it cannot be inspected."""
        service = self.service_set.get(service_name)
        try:
            image_id, reference = self.runtime.container_image(service.container)
        except CommandError as e:
            log_message(f"Cannot inspect image of {service_name}: {e}", "WARNING")
            return None
        if not image_id or not reference:
            return None
        return image_id, reference

    def pin_image(self, image_id: str, reference: str) -> None:
        """Point an image reference back at a previously running image."""
        log_message(f"Re-tagging {image_id[:12]} as {reference}")
        self.runtime.tag_image(image_id, reference)

    # --- Health ---
    def check_health(self, service_name: str) -> bool:
        """Run one health-check probe for a service."""
        service = self.service_set.get(service_name)
        if service.health_url:
            try:
                response = requests.get(service.health_url, timeout=self.http_timeout)
                return response.ok
            except requests.RequestException as e:
                log_message(f"{service_name} health endpoint unreachable: {e}", "DEBUG")
                return False
        if service.health_command:
            try:
                result = self.runtime.exec(service.container, service.health_command,
                                           check=False, timeout=self.http_timeout * 3)
                return result.returncode == 0
            except CommandError as e:
                log_message(f"{service_name} health command failed: {e}", "DEBUG")
                return False
        return self.is_running(service_name)

    def wait_healthy(self, service_name: str, max_attempts: int, interval: float) -> bool:
        """Poll a service's health check; never raises on an unhealthy service."""
        healthy, _ = poll_until(
            lambda: self.check_health(service_name),
            max_attempts,
            interval,
            sleep=self.sleep,
            label=f"{service_name} health check"
        )
        return healthy

    def wait_all_healthy(self, max_attempts: int, interval: float,
                         service_names: Optional[List[str]] = None) -> Dict[str, bool]:
        """Poll every service concurrently; returns the health result per service."""
        names = service_names or self.service_set.names()
        if not names:
            return {}
        with ThreadPoolExecutor(max_workers=len(names)) as executor:
            futures = {name: executor.submit(self.wait_healthy, name, max_attempts, interval)
                       for name in names}
            return {name: future.result() for name, future in futures.items()}

    def status(self) -> Dict[str, Dict[str, bool]]:
        """Single-probe running/health status of every service."""
        results = {}
        for service in self.service_set.services:
            try:
                running = self.is_running(service.name)
            except CommandError as e:
                log_message(f"Cannot query {service.name}: {e}", "WARNING")
                running = False
            healthy = self.check_health(service.name) if running else False
            results[service.name] = {"running": running, "healthy": healthy}
            marker = "✓" if healthy else "✗"
            log_message(f"{marker} {service.name}: running={running} healthy={healthy}")
        return results

    # --- Probes & cleanup ---
    def run_probe(self, service_name: str, command: List[str]) -> bool:
        """Run a functional probe command inside a service container."""
        service = self.service_set.get(service_name)
        try:
            result = self.runtime.exec(service.container, command, check=False)
        except CommandError as e:
            log_message(f"Functional probe failed to run: {e}", "WARNING")
            return False
        if result.returncode == 0:
            log_message("✓ Basic functionality test passed")
            return True
        log_message(f"Basic functionality test failed: {result.stderr.strip()}", "WARNING")
        return False

    def cleanup_images(self, repository: str, keep: int = 2) -> int:
        """Prune dangling images and remove app images beyond the newest `keep`."""
        log_message("Cleaning up old container images...")
        self.runtime.prune_images()
        removed = 0
        for image_id in self.runtime.list_images(repository)[keep:]:
            try:
                self.runtime.remove_image(image_id)
                removed += 1
            except CommandError as e:
                log_message(f"Could not remove image {image_id}: {e}", "WARNING")
        log_message(f"✓ Old images cleaned up ({removed} removed)")
        return removed
