"""Tests for the lifecycle lease (mutual exclusion and abandoned attempts)."""

import json
import os
import socket
from unittest.mock import patch

import pytest

from n8n_lifecycle.utils.errors import AbandonedAttempt, LeaseHeld
from n8n_lifecycle.utils.lease import LifecycleLease


def write_lease(lease, **overrides):
    data = {
        "attempt_id": "20240101_000000",
        "pid": 999999,
        "hostname": socket.gethostname(),
        "started_at": 0,
        "phase": "idle",
        "command": "update",
    }
    data.update(overrides)
    lease.state_dir.mkdir(parents=True, exist_ok=True)
    with open(lease.path, "w") as f:
        json.dump(data, f)


class TestLeaseAcquisition:

    @pytest.fixture
    def lease(self, tmp_path):
        return LifecycleLease(str(tmp_path / "state"), "n8n")

    def test_acquire_writes_lease_file(self, lease):
        lease.acquire("20240601_120000", command="backup")

        data = lease.read()
        assert lease.held
        assert data["attempt_id"] == "20240601_120000"
        assert data["pid"] == os.getpid()
        assert data["phase"] == "idle"
        assert data["command"] == "backup"

    def test_second_acquire_is_rejected_while_holder_alive(self, lease, tmp_path):
        lease.acquire("first")
        other = LifecycleLease(str(tmp_path / "state"), "n8n")

        with pytest.raises(LeaseHeld):
            other.acquire("second")
        assert lease.read()["attempt_id"] == "first"

    def test_release_removes_lease(self, lease):
        lease.acquire("attempt")
        lease.release()

        assert not lease.path.exists()
        assert not lease.held

    def test_release_allows_next_attempt(self, lease, tmp_path):
        lease.acquire("first")
        lease.release()

        other = LifecycleLease(str(tmp_path / "state"), "n8n")
        other.acquire("second")
        assert other.read()["attempt_id"] == "second"

    def test_update_phase_rewrites_lease(self, lease):
        lease.acquire("attempt")
        lease.update_phase("updating")

        assert lease.read()["phase"] == "updating"

    def test_different_service_sets_do_not_conflict(self, tmp_path):
        LifecycleLease(str(tmp_path), "basic").acquire("a")
        LifecycleLease(str(tmp_path), "production").acquire("b")


class TestStaleLeases:

    @pytest.fixture
    def lease(self, tmp_path):
        return LifecycleLease(str(tmp_path / "state"), "n8n")

    @pytest.mark.parametrize("phase", ["idle", "checking_version", "snapshotting"])
    def test_dead_holder_before_mutation_is_reclaimed(self, lease, phase):
        write_lease(lease, phase=phase)

        with patch("n8n_lifecycle.utils.lease._pid_alive", return_value=False):
            lease.acquire("new-attempt")

        assert lease.read()["attempt_id"] == "new-attempt"

    @pytest.mark.parametrize("phase", ["updating", "verifying_health", "rolling_back", "restoring"])
    def test_dead_holder_after_mutation_requires_operator(self, lease, phase):
        write_lease(lease, phase=phase)

        with patch("n8n_lifecycle.utils.lease._pid_alive", return_value=False):
            with pytest.raises(AbandonedAttempt) as exc_info:
                lease.acquire("new-attempt")

        assert exc_info.value.lease["phase"] == phase
        assert lease.read()["attempt_id"] == "20240101_000000"

    def test_halted_lease_blocks_even_if_pid_alive(self, lease):
        write_lease(lease, phase="halted", pid=os.getpid())

        with pytest.raises(AbandonedAttempt):
            lease.acquire("new-attempt")

    def test_holder_on_another_host_is_assumed_alive(self, lease):
        write_lease(lease, hostname="some-other-host", phase="idle")

        with pytest.raises(LeaseHeld):
            lease.acquire("new-attempt")

    def test_halt_keeps_lease_in_halted_phase(self, lease):
        lease.acquire("attempt")
        lease.halt("services unhealthy after rollback")

        data = lease.read()
        assert data["phase"] == "halted"
        assert data["halt_reason"] == "services unhealthy after rollback"
        assert not lease.held

    def test_force_release(self, lease):
        write_lease(lease, phase="updating")

        assert lease.force_release() is True
        assert not lease.path.exists()
        assert lease.force_release() is False
