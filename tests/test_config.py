"""Tests for settings loading and credential generation."""

import os
import stat

import pytest

from n8n_lifecycle.utils.config import (
    DEFAULT_RELEASES_URL, generate_credentials, load_settings, read_env_file
)


class TestLoadSettings:
    """Settings come from .env overlaid by the process environment."""

    def test_defaults_without_env_file(self, tmp_path):
        settings = load_settings(str(tmp_path), environ={})

        assert settings.project_root == str(tmp_path)
        assert settings.env_file == os.path.join(str(tmp_path), ".env")
        assert settings.backup_path == os.path.join(str(tmp_path), "backups")
        assert settings.log_dir == os.path.join(str(tmp_path), "logs")
        assert settings.state_dir == os.path.join(str(tmp_path), "state")
        assert settings.backup_retention_days == 30
        assert settings.backup_retention_count == 5
        assert settings.health_max_attempts == 30
        assert settings.health_interval == 10.0
        assert settings.settle_seconds == 60.0
        assert settings.deployment_mode == "auto"
        assert settings.n8n_releases_url == DEFAULT_RELEASES_URL
        assert settings.compose_command_args == ["podman-compose"]

    def test_reads_env_file(self, tmp_path):
        (tmp_path / ".env").write_text(
            "DOMAIN_NAME=n8n.example.com\n"
            "POSTGRES_USER=workflow\n"
            "BACKUP_RETENTION_DAYS=7\n"
            "DEPLOYMENT_MODE=production\n"
            "COMPOSE_COMMAND=docker compose\n"
        )

        settings = load_settings(str(tmp_path), environ={})

        assert settings.domain_name == "n8n.example.com"
        assert settings.postgres_user == "workflow"
        assert settings.backup_retention_days == 7
        assert settings.deployment_mode == "production"
        assert settings.compose_command_args == ["docker", "compose"]

    def test_environment_overrides_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("BACKUP_RETENTION_COUNT=5\nHEALTH_INTERVAL=10\n")

        settings = load_settings(str(tmp_path), environ={"BACKUP_RETENTION_COUNT": "9",
                                                         "HEALTH_INTERVAL": "0.5"})

        assert settings.backup_retention_count == 9
        assert settings.health_interval == 0.5

    def test_offsite_upload_settings(self, tmp_path):
        assert load_settings(str(tmp_path), environ={}).oci_bucket_name == ""

        settings = load_settings(str(tmp_path), environ={"OCI_BUCKET_NAME": "n8n-backups",
                                                         "OCI_REGION": "eu-frankfurt-1"})

        assert settings.oci_bucket_name == "n8n-backups"
        assert settings.oci_region == "eu-frankfurt-1"

    def test_malformed_integer_names_the_key(self, tmp_path):
        with pytest.raises(ValueError, match="BACKUP_RETENTION_DAYS"):
            load_settings(str(tmp_path), environ={"BACKUP_RETENTION_DAYS": "thirty"})

    def test_invalid_deployment_mode(self, tmp_path):
        with pytest.raises(ValueError, match="DEPLOYMENT_MODE"):
            load_settings(str(tmp_path), environ={"DEPLOYMENT_MODE": "cluster"})

    def test_health_attempts_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError, match="HEALTH_MAX_ATTEMPTS"):
            load_settings(str(tmp_path), environ={"HEALTH_MAX_ATTEMPTS": "0"})

    def test_settings_are_immutable(self, tmp_path):
        settings = load_settings(str(tmp_path), environ={})

        with pytest.raises(Exception):
            settings.backup_retention_days = 1

    def test_to_dict_redacts_secrets(self, tmp_path):
        settings = load_settings(str(tmp_path), environ={"POSTGRES_PASSWORD": "hunter2"})

        assert settings.to_dict()["postgres_password"] == "********"
        assert settings.to_dict(redact=False)["postgres_password"] == "hunter2"


class TestGenerateCredentials:
    """Setup-time credential generation never overwrites real values."""

    def test_creates_env_file_with_all_credentials(self, tmp_path):
        env_file = tmp_path / ".env"

        generated = generate_credentials(str(env_file))

        values = read_env_file(str(env_file))
        assert set(generated) == {"N8N_BASIC_AUTH_PASSWORD", "POSTGRES_PASSWORD",
                                  "REDIS_PASSWORD", "N8N_ENCRYPTION_KEY"}
        assert len(values["POSTGRES_PASSWORD"]) == 25
        assert len(values["N8N_ENCRYPTION_KEY"]) == 32
        assert stat.S_IMODE(os.stat(env_file).st_mode) == 0o600

    def test_replaces_placeholders_and_keeps_real_values(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "DOMAIN_NAME=n8n.example.com\n"
            "POSTGRES_PASSWORD=your_secure_db_password\n"
            "REDIS_PASSWORD=already-set-redis\n"
        )

        generated = generate_credentials(str(env_file))

        values = read_env_file(str(env_file))
        assert "POSTGRES_PASSWORD" in generated
        assert "REDIS_PASSWORD" not in generated
        assert values["REDIS_PASSWORD"] == "already-set-redis"
        assert values["POSTGRES_PASSWORD"] != "your_secure_db_password"
        assert values["DOMAIN_NAME"] == "n8n.example.com"

    def test_second_run_generates_nothing(self, tmp_path):
        env_file = tmp_path / ".env"
        generate_credentials(str(env_file))
        first = read_env_file(str(env_file))

        assert generate_credentials(str(env_file)) == []
        assert read_env_file(str(env_file)) == first
