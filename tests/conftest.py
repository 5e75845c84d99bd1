"""Shared fixtures for the n8n lifecycle test suite."""

import copy
import gzip
import json
import os
import subprocess
from unittest.mock import MagicMock

import pytest

from n8n_lifecycle.modules.n8n.index import DEFAULT_CONFIG, build_service_set
from n8n_lifecycle.utils.config import Settings
from n8n_lifecycle.utils.container_runtime import ContainerRuntime
from n8n_lifecycle.utils.service_controller import ServiceController


def completed(stdout="", returncode=0, stderr=""):
    """Build a CompletedProcess like ContainerRuntime.run returns."""
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def project_root(tmp_path):
    """A deployment directory with n8n data, config and an .env file."""
    root = tmp_path / "n8n-setup"
    data_dir = root / "data" / "n8n"
    data_dir.mkdir(parents=True)
    (data_dir / "database.sqlite").write_bytes(b"sqlite-data")
    (data_dir / "config").write_text('{"encryptionKey": "abc"}')
    config_dir = root / "config"
    config_dir.mkdir()
    (config_dir / "docker-compose.basic.yml").write_text("services: {}\n")
    (root / ".env").write_text("DOMAIN_NAME=n8n.example.com\n")
    return root


@pytest.fixture
def settings(project_root):
    return Settings(
        project_root=str(project_root),
        env_file=str(project_root / ".env"),
        domain_name="",
        postgres_db="n8n",
        postgres_user="n8n",
        backup_path=str(project_root / "backups"),
        log_dir=str(project_root / "logs"),
        state_dir=str(project_root / "state"),
        health_max_attempts=3,
        health_interval=0.0,
        settle_seconds=0.0,
    )


@pytest.fixture
def stack():
    return copy.deepcopy(DEFAULT_CONFIG["config"])


@pytest.fixture
def basic_set(settings):
    return build_service_set(settings, "basic")


@pytest.fixture
def production_set(settings):
    return build_service_set(settings, "production")


@pytest.fixture
def runtime():
    """ContainerRuntime double where every container is running and every command succeeds."""
    mock = MagicMock(spec=ContainerRuntime)
    mock.is_running.return_value = True
    mock.container_exists.return_value = True
    mock.exec.return_value = completed()
    mock.compose.return_value = completed()
    mock.list_images.return_value = []
    mock.container_image.return_value = ("sha256:old", "docker.n8n.io/n8nio/n8n:latest")

    def copy_from(container, source, destination):
        with open(destination, "w") as f:
            json.dump([{"id": "1", "name": os.path.basename(source)}], f)

    def exec_to_file(container, command, destination, compress=True):
        with gzip.open(destination, "wb") as f:
            f.write(b"-- PostgreSQL database dump\nCREATE TABLE workflow_entity ();\n")
        return os.path.getsize(destination)

    mock.copy_from.side_effect = copy_from
    mock.exec_to_file.side_effect = exec_to_file
    return mock


@pytest.fixture
def sleeps():
    """Recorded sleep calls; passed where a sleep function is injected."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


@pytest.fixture
def basic_controller(runtime, basic_set, fake_sleep):
    return ServiceController(runtime, basic_set, sleep=fake_sleep)


@pytest.fixture
def production_controller(runtime, production_set, fake_sleep):
    return ServiceController(runtime, production_set, sleep=fake_sleep)
