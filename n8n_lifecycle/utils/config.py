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
Process-wide configuration.

Settings come from the project's .env file overlaid by the process
environment. They are loaded once at process start and never mutated;
the only writer of .env is setup-time credential generation.

Usage:
    from n8n_lifecycle.utils.config import load_settings

    settings = load_settings("/home/opc/n8n-setup")
    settings.backup_retention_days  # 30
"""

import os
import secrets
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Any, List, Mapping, Optional

from dotenv import dotenv_values, set_key

from .index import log_message

DEFAULT_RELEASES_URL = "https://api.github.com/repos/n8n-io/n8n/releases/latest"
DEPLOYMENT_MODES = ("auto", "basic", "production")

# Values shipped in the .env template that must be replaced at setup time
PLACEHOLDER_VALUES = {
    "",
    "changeme_secure_password",
    "your_secure_db_password",
    "your_secure_redis_password",
    "your_encryption_key",
}

GENERATED_CREDENTIALS = [
    "N8N_BASIC_AUTH_PASSWORD",
    "POSTGRES_PASSWORD",
    "REDIS_PASSWORD",
    "N8N_ENCRYPTION_KEY",
]

SECRET_KEYS = {"POSTGRES_PASSWORD", "REDIS_PASSWORD", "N8N_BASIC_AUTH_PASSWORD", "N8N_ENCRYPTION_KEY"}


@dataclass(frozen=True)
class Settings:
    """Flat key-value configuration of one n8n deployment."""
    project_root: str
    env_file: str
    domain_name: str = ""
    ssl_email: str = ""
    postgres_db: str = "n8n"
    postgres_user: str = "n8n"
    postgres_password: str = ""
    redis_password: str = ""
    n8n_basic_auth_user: str = "admin"
    n8n_basic_auth_password: str = ""
    backup_path: str = ""
    backup_retention_days: int = 30
    backup_retention_count: int = 5
    notification_webhook: str = ""
    deployment_mode: str = "auto"
    container_runtime: str = "podman"
    compose_command: str = "podman-compose"
    health_max_attempts: int = 30
    health_interval: float = 10.0
    settle_seconds: float = 60.0
    version_timeout: float = 10.0
    n8n_releases_url: str = DEFAULT_RELEASES_URL
    log_dir: str = ""
    state_dir: str = ""
    image_keep_count: int = 2
    oci_bucket_name: str = ""
    oci_region: str = "us-ashburn-1"

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if redact:
            for key in list(data):
                if key.upper() in SECRET_KEYS and data[key]:
                    data[key] = "********"
        return data

    @property
    def compose_command_args(self) -> List[str]:
        return self.compose_command.split()


def _get_int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        raise ValueError(f"Invalid integer for {key}: {raw!r}")


def _get_float(values: Mapping[str, str], key: str, default: float) -> float:
    raw = values.get(key)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        return float(str(raw).strip())
    except ValueError:
        raise ValueError(f"Invalid number for {key}: {raw!r}")


def read_env_file(env_file: str) -> Dict[str, str]:
    """Parse a .env file into a dict, or return {} when it does not exist."""
    if not os.path.exists(env_file):
        log_message(f"No .env file at {env_file}, using process environment only", "DEBUG")
        return {}
    return {k: v for k, v in dotenv_values(env_file).items() if v is not None}


def load_settings(project_root: str, env_file: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load settings for the deployment rooted at project_root.

    Args:
        project_root: Directory holding config/, data/, .env
        env_file: Path of the .env file (default: <project_root>/.env)
        environ: Environment overlay (default: os.environ)

    Returns:
        Settings: Immutable configuration
    """
    project_root = os.path.abspath(project_root)
    env_file = env_file or os.path.join(project_root, ".env")
    environ = os.environ if environ is None else environ

    values: Dict[str, str] = dict(read_env_file(env_file))
    for key, value in environ.items():
        values[key] = value

    deployment_mode = values.get("DEPLOYMENT_MODE", "auto").strip().lower() or "auto"
    if deployment_mode not in DEPLOYMENT_MODES:
        raise ValueError(f"Invalid DEPLOYMENT_MODE: {deployment_mode!r} (expected one of {', '.join(DEPLOYMENT_MODES)})")

    settings = Settings(
        project_root=project_root,
        env_file=env_file,
        domain_name=values.get("DOMAIN_NAME", ""),
        ssl_email=values.get("SSL_EMAIL", ""),
        postgres_db=values.get("POSTGRES_DB", "n8n") or "n8n",
        postgres_user=values.get("POSTGRES_USER", "n8n") or "n8n",
        postgres_password=values.get("POSTGRES_PASSWORD", ""),
        redis_password=values.get("REDIS_PASSWORD", ""),
        n8n_basic_auth_user=values.get("N8N_BASIC_AUTH_USER", "admin") or "admin",
        n8n_basic_auth_password=values.get("N8N_BASIC_AUTH_PASSWORD", ""),
        backup_path=values.get("BACKUP_PATH") or os.path.join(project_root, "backups"),
        backup_retention_days=_get_int(values, "BACKUP_RETENTION_DAYS", 30),
        backup_retention_count=_get_int(values, "BACKUP_RETENTION_COUNT", 5),
        notification_webhook=values.get("NOTIFICATION_WEBHOOK", ""),
        deployment_mode=deployment_mode,
        container_runtime=values.get("CONTAINER_RUNTIME", "podman") or "podman",
        compose_command=values.get("COMPOSE_COMMAND", "podman-compose") or "podman-compose",
        health_max_attempts=_get_int(values, "HEALTH_MAX_ATTEMPTS", 30),
        health_interval=_get_float(values, "HEALTH_INTERVAL", 10.0),
        settle_seconds=_get_float(values, "SETTLE_SECONDS", 60.0),
        version_timeout=_get_float(values, "VERSION_TIMEOUT", 10.0),
        n8n_releases_url=values.get("N8N_RELEASES_URL") or DEFAULT_RELEASES_URL,
        log_dir=values.get("LOG_DIR") or os.path.join(project_root, "logs"),
        state_dir=values.get("STATE_DIR") or os.path.join(project_root, "state"),
        image_keep_count=_get_int(values, "IMAGE_KEEP_COUNT", 2),
        oci_bucket_name=values.get("OCI_BUCKET_NAME", ""),
        oci_region=values.get("OCI_REGION") or "us-ashburn-1",
    )

    if settings.health_max_attempts < 1:
        raise ValueError("HEALTH_MAX_ATTEMPTS must be at least 1")
    if settings.backup_retention_days < 0 or settings.backup_retention_count < 0:
        raise ValueError("Backup retention values must not be negative")

    return settings


def generate_secret(length: int = 25) -> str:
    """Random alphanumeric secret, same shape as the setup scripts produced."""
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_credentials(env_file: str) -> List[str]:
    """
    Fill missing or placeholder credentials in the .env file.

    Existing real values are never overwritten. The file is created with
    mode 600 when it does not exist yet.

    Args:
        env_file: Path of the .env file

    Returns:
        list: Keys that were generated
    """
    env_path = Path(env_file)
    if not env_path.exists():
        env_path.parent.mkdir(parents=True, exist_ok=True)
        env_path.touch(mode=0o600)
        log_message(f"Created {env_file}")

    current = read_env_file(env_file)
    generated = []

    for key in GENERATED_CREDENTIALS:
        if current.get(key, "").strip() not in PLACEHOLDER_VALUES:
            log_message(f"Keeping existing value for {key}", "DEBUG")
            continue
        length = 32 if key == "N8N_ENCRYPTION_KEY" else 25
        set_key(env_file, key, generate_secret(length), quote_mode="never")
        generated.append(key)
        log_message(f"✓ Generated {key}")

    try:
        os.chmod(env_file, 0o600)
    except OSError as e:
        log_message(f"Failed to restrict permissions on {env_file}: {e}", "WARNING")

    if not generated:
        log_message("All credentials already set, nothing generated")
    return generated
