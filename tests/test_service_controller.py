"""Tests for the Service Controller and the ServiceSet model."""

import os
from unittest.mock import call, patch

import pytest
import requests

from n8n_lifecycle.utils.errors import CommandError, MissingCertificates
from n8n_lifecycle.utils.service_controller import (
    ServiceController, ServiceSet, ServiceSpec, TIER_APP, TIER_DATA, TIER_EDGE
)

from conftest import completed


class TestServiceSet:

    def test_production_order_is_data_app_edge(self, production_set):
        assert production_set.names() == ["postgres", "redis", "n8n", "nginx"]
        assert [s.name for s in production_set.shutdown_order()] == ["nginx", "n8n", "redis", "postgres"]

    def test_rejects_edge_before_app(self):
        with pytest.raises(ValueError):
            ServiceSet(
                name="broken",
                mode="production",
                compose_file="compose.yml",
                services=[ServiceSpec("nginx", TIER_EDGE), ServiceSpec("n8n", TIER_APP)]
            )

    def test_rejects_unknown_tier(self):
        with pytest.raises(ValueError):
            ServiceSpec("n8n", "frontend")

    def test_writers_and_database(self, production_set, basic_set):
        assert [s.name for s in production_set.writers()] == ["n8n"]
        assert production_set.database.name == "postgres"
        assert basic_set.database is None
        assert basic_set.app.name == "n8n"


class TestStartStop:
    """Start/stop must be idempotent."""

    def test_start_running_service_is_noop(self, runtime, basic_controller):
        runtime.is_running.return_value = True

        basic_controller.start("n8n")

        runtime.compose.assert_not_called()

    def test_start_stopped_service(self, runtime, basic_controller, basic_set):
        runtime.is_running.return_value = False

        basic_controller.start("n8n")

        runtime.compose.assert_called_once_with(basic_set.compose_file, "up", "-d", "n8n")

    def test_stop_stopped_service_is_noop(self, runtime, basic_controller):
        runtime.is_running.return_value = False

        basic_controller.stop("n8n")

        runtime.compose.assert_not_called()

    def test_stop_running_service(self, runtime, basic_controller, basic_set):
        basic_controller.stop("n8n")

        runtime.compose.assert_called_once_with(basic_set.compose_file, "stop", "n8n")

    def test_unknown_service(self, basic_controller):
        with pytest.raises(KeyError):
            basic_controller.start("mysql")

    def test_start_all_uses_declared_order(self, runtime, production_controller, production_set):
        runtime.is_running.return_value = False
        for path in production_set.get("nginx").certificates:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w") as f:
                f.write("-----BEGIN CERTIFICATE-----")

        production_controller.start_all()

        started = [c.args[3] for c in runtime.compose.call_args_list]
        assert started == ["postgres", "redis", "n8n", "nginx"]

    def test_stop_all_uses_reverse_order(self, runtime, production_controller):
        production_controller.stop_all()

        stopped = [c.args[2] for c in runtime.compose.call_args_list]
        assert stopped == ["nginx", "n8n", "redis", "postgres"]

    def test_proxy_refuses_to_start_without_certificates(self, runtime, production_controller):
        runtime.is_running.return_value = False

        with pytest.raises(MissingCertificates) as exc_info:
            production_controller.start("nginx")

        assert exc_info.value.service == "nginx"
        assert len(exc_info.value.missing) == 2
        runtime.compose.assert_not_called()

    def test_pull_does_not_touch_running_containers(self, runtime, production_controller, production_set):
        production_controller.pull_latest_images()

        runtime.compose.assert_called_once_with(production_set.compose_file, "pull", timeout=1800)
        runtime.is_running.assert_not_called()


class TestConfirmStopped:

    def test_all_stopped(self, runtime, production_controller):
        runtime.is_running.return_value = False

        assert production_controller.confirm_stopped(["n8n"]) is True

    def test_running_writer(self, runtime, production_controller):
        runtime.is_running.return_value = True

        assert production_controller.confirm_stopped(["n8n"]) is False

    def test_unknown_state_is_not_confirmed(self, runtime, production_controller):
        runtime.is_running.side_effect = CommandError(["podman", "ps"], None, "podman not found")

        assert production_controller.confirm_stopped(["n8n"]) is False


class TestHealth:
    """waitHealthy is a bounded poll that never raises on unhealthy services."""

    def test_healthy_after_retries(self, runtime, basic_controller, sleeps):
        runtime.exec.side_effect = [completed(returncode=1), completed(returncode=1), completed()]

        assert basic_controller.wait_healthy("n8n", max_attempts=5, interval=10) is True
        assert sleeps == [10, 10]

    def test_exhausted_returns_false(self, runtime, basic_controller, sleeps):
        runtime.exec.return_value = completed(returncode=1)

        assert basic_controller.wait_healthy("n8n", max_attempts=3, interval=10) is False
        assert runtime.exec.call_count == 3
        assert sleeps == [10, 10]

    def test_health_command_failure_is_unhealthy(self, runtime, basic_controller):
        runtime.exec.side_effect = CommandError(["podman", "exec"], None, "timed out")

        assert basic_controller.check_health("n8n") is False

    def test_app_health_uses_healthz_command(self, runtime, basic_controller):
        basic_controller.check_health("n8n")

        container, command = runtime.exec.call_args.args[:2]
        assert container == "n8n"
        assert "http://localhost:5678/healthz" in command

    def test_health_url(self, runtime, fake_sleep):
        service_set = ServiceSet(
            name="edge-only", mode="production", compose_file="compose.yml",
            services=[ServiceSpec("n8n", TIER_APP),
                      ServiceSpec("nginx", TIER_EDGE, health_url="https://n8n.example.com/healthz")]
        )
        controller = ServiceController(runtime, service_set, sleep=fake_sleep)

        with patch("n8n_lifecycle.utils.service_controller.requests.get") as mock_get:
            mock_get.return_value.ok = True
            assert controller.check_health("nginx") is True
            mock_get.side_effect = requests.ConnectionError("refused")
            assert controller.check_health("nginx") is False

    def test_wait_all_healthy_reports_each_service(self, runtime, production_controller):
        def exec_side_effect(container, command, **kwargs):
            return completed(returncode=1 if container == "redis" else 0)

        runtime.exec.side_effect = exec_side_effect

        results = production_controller.wait_all_healthy(max_attempts=2, interval=0)

        assert results == {"postgres": True, "redis": False, "n8n": True, "nginx": True}


class TestProbeAndCleanup:

    def test_probe_passes(self, runtime, basic_controller):
        assert basic_controller.run_probe("n8n", ["n8n", "list:workflow"]) is True
        runtime.exec.assert_called_once_with("n8n", ["n8n", "list:workflow"], check=False)

    def test_probe_fails(self, runtime, basic_controller):
        runtime.exec.return_value = completed(returncode=1, stderr="connection refused")

        assert basic_controller.run_probe("n8n", ["n8n", "list:workflow"]) is False

    def test_cleanup_keeps_newest_images(self, runtime, basic_controller):
        runtime.list_images.return_value = ["img4", "img3", "img2", "img1"]

        removed = basic_controller.cleanup_images("docker.n8n.io/n8nio/n8n", keep=2)

        assert removed == 2
        runtime.prune_images.assert_called_once()
        assert runtime.remove_image.call_args_list == [call("img2"), call("img1")]

    def test_cleanup_tolerates_images_in_use(self, runtime, basic_controller):
        runtime.list_images.return_value = ["img3", "img2", "img1"]
        runtime.remove_image.side_effect = CommandError(["podman", "rmi"], 2, "image in use")

        assert basic_controller.cleanup_images("docker.n8n.io/n8nio/n8n", keep=2) == 0

    def test_current_image(self, runtime, basic_controller):
        assert basic_controller.current_image("n8n") == ("sha256:old", "docker.n8n.io/n8nio/n8n:latest")

        runtime.container_image.side_effect = CommandError(["podman", "inspect"], 125, "no such container")
        assert basic_controller.current_image("n8n") is None
