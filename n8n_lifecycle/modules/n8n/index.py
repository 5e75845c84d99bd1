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

import copy
import json
import os
from typing import Any, Dict, List

from n8n_lifecycle.utils.index import log_message
from n8n_lifecycle.utils.config import Settings
from n8n_lifecycle.utils.container_runtime import ContainerRuntime
from n8n_lifecycle.utils.errors import CommandError
from n8n_lifecycle.utils.service_controller import (
    ServiceSet, ServiceSpec, TIER_APP, TIER_DATA, TIER_EDGE
)
from n8n_lifecycle.utils.snapshot_manager import ArtifactKind

DEFAULT_CONFIG = {
    "metadata": {
        "schema_version": "1.0.0",
        "module_name": "n8n"
    },
    "config": {
        "image_repository": "docker.n8n.io/n8nio/n8n",
        "compose_files": {
            "basic": "config/docker-compose.basic.yml",
            "production": "config/docker-compose.production.yml"
        },
        "containers": {
            "app": "n8n",
            "database": "postgres",
            "cache": "redis",
            "proxy": "nginx"
        },
        "paths": {
            "data_dir": "data/n8n",
            "ssl_dir": "data/nginx/ssl",
            "config_paths": ["config", ".env", "docker-compose*.yml"],
            "container_export_dir": "/home/node/.n8n/backups"
        },
        "commands": {
            "version": ["n8n", "--version"],
            "probe": ["n8n", "list:workflow"],
            "export_workflows": ["n8n", "export:workflow", "--all"],
            "export_credentials": ["n8n", "export:credentials", "--all"],
            "app_health": ["wget", "--spider", "-q", "http://localhost:5678/healthz"],
            "database_health": ["pg_isready", "-U", "{postgres_user}", "-d", "{postgres_db}"],
            "cache_health": ["redis-cli", "ping"]
        },
        "proxy_health_url": "https://{domain_name}/healthz"
    }
}


# Load module configuration from index.json
def load_module_config():
    """
    Load configuration from the module's index.json file.
    Returns:
        dict: Configuration data or default values if loading fails
    """
    try:
        config_path = os.path.join(os.path.dirname(__file__), "index.json")
        with open(config_path, 'r') as f:
            return json.load(f)
    except Exception as e:
        log_message(f"Failed to load module config: {e}", "WARNING")
        return copy.deepcopy(DEFAULT_CONFIG)


# Global configuration
MODULE_CONFIG = load_module_config()


def get_stack_config() -> Dict[str, Any]:
    """The module's "config" section with any missing keys filled from the defaults."""
    stack = copy.deepcopy(DEFAULT_CONFIG["config"])
    for key, value in MODULE_CONFIG.get("config", {}).items():
        if isinstance(value, dict) and isinstance(stack.get(key), dict):
            stack[key].update(value)
        else:
            stack[key] = value
    return stack


def format_command(command: List[str], settings: Settings) -> List[str]:
    """Substitute {postgres_user}-style placeholders from the settings."""
    values = settings.to_dict(redact=False)
    return [part.format(**values) for part in command]


def compose_file_path(settings: Settings, mode: str) -> str:
    relative = get_stack_config()["compose_files"][mode]
    return os.path.join(settings.project_root, relative)


def detect_deployment_mode(settings: Settings, runtime: ContainerRuntime) -> str:
    """
    Resolve DEPLOYMENT_MODE=auto: production when its compose file exists and
    the database container exists (running or stopped), basic otherwise.
    """
    if settings.deployment_mode != "auto":
        return settings.deployment_mode

    if not os.path.isfile(compose_file_path(settings, "production")):
        log_message("Production compose file not found, using basic deployment")
        return "basic"

    database = get_stack_config()["containers"]["database"]
    try:
        exists = runtime.container_exists(database)
    except CommandError as e:
        log_message(f"Cannot query {database} container: {e}", "WARNING")
        exists = False

    mode = "production" if exists else "basic"
    log_message(f"Detected {mode} deployment")
    return mode


def certificate_paths(settings: Settings) -> List[str]:
    ssl_dir = os.path.join(settings.project_root, get_stack_config()["paths"]["ssl_dir"])
    live_dir = os.path.join(ssl_dir, "live", settings.domain_name or "localhost")
    return [os.path.join(live_dir, "fullchain.pem"), os.path.join(live_dir, "privkey.pem")]


def build_service_set(settings: Settings, mode: str) -> ServiceSet:
    """
    Declare the services of a deployment mode in startup order.

    Args:
        settings: Loaded settings
        mode: "basic" or "production"

    Returns:
        ServiceSet: Ordered services with their health contracts
    """
    if mode not in ("basic", "production"):
        raise ValueError(f"Unknown deployment mode: {mode}")

    stack = get_stack_config()
    containers = stack["containers"]
    commands = stack["commands"]

    app = ServiceSpec(
        name="n8n",
        tier=TIER_APP,
        container=containers["app"],
        health_command=list(commands["app_health"]),
        writes=True
    )

    if mode == "basic":
        return ServiceSet(
            name="basic",
            mode=mode,
            compose_file=compose_file_path(settings, mode),
            services=[app],
            mandatory_artifacts={ArtifactKind.FILESYSTEM_ARCHIVE.value},
            app_image=stack["image_repository"]
        )

    proxy_url = ""
    if settings.domain_name:
        proxy_url = stack["proxy_health_url"].format(domain_name=settings.domain_name)

    services = [
        ServiceSpec(
            name="postgres",
            tier=TIER_DATA,
            container=containers["database"],
            health_command=format_command(commands["database_health"], settings)
        ),
        ServiceSpec(
            name="redis",
            tier=TIER_DATA,
            container=containers["cache"],
            health_command=list(commands["cache_health"])
        ),
        app,
        ServiceSpec(
            name="nginx",
            tier=TIER_EDGE,
            container=containers["proxy"],
            health_url=proxy_url,
            certificates=certificate_paths(settings)
        ),
    ]
    return ServiceSet(
        name="production",
        mode=mode,
        compose_file=compose_file_path(settings, mode),
        services=services,
        mandatory_artifacts={ArtifactKind.FILESYSTEM_ARCHIVE.value, ArtifactKind.DATABASE_DUMP.value},
        app_image=stack["image_repository"]
    )


def resolve_service_set(settings: Settings, runtime: ContainerRuntime) -> ServiceSet:
    return build_service_set(settings, detect_deployment_mode(settings, runtime))
