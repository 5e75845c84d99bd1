"""Tests for version resolution against the running container and the release feed."""

from unittest.mock import MagicMock

import pytest
import requests

from n8n_lifecycle.utils.errors import CommandError, VersionUnknown
from n8n_lifecycle.utils.version_resolver import (
    UNKNOWN_VERSION, VersionCheck, VersionResolver, parse_version
)

from conftest import completed

RELEASES_URL = "https://api.github.com/repos/n8n-io/n8n/releases/latest"


def release_session(tag=None, error=None, status_error=None):
    session = MagicMock(spec=requests.Session)
    if error is not None:
        session.get.side_effect = error
        return session
    response = MagicMock()
    response.json.return_value = {"tag_name": tag}
    if status_error is not None:
        response.raise_for_status.side_effect = status_error
    session.get.return_value = response
    return session


@pytest.fixture
def make_resolver(runtime):
    def factory(current_output="1.2.0\n", tag="n8n@1.3.0", **session_kwargs):
        runtime.exec.return_value = completed(stdout=current_output)
        session = release_session(tag=tag, **session_kwargs)
        return VersionResolver(runtime, "n8n", ["n8n", "--version"], RELEASES_URL, session=session)
    return factory


class TestParseVersion:

    def test_plain_output(self):
        assert parse_version("1.64.0\n") == "1.64.0"

    def test_noisy_output(self):
        assert parse_version("n8n version 1.64.0 (self-hosted)") == "1.64.0"

    def test_no_version(self):
        with pytest.raises(VersionUnknown):
            parse_version("command not found")

    def test_empty(self):
        with pytest.raises(VersionUnknown):
            parse_version(None)


class TestVersionCheck:

    def test_same_version(self):
        assert VersionCheck("1.2.0", "1.2.0").update_available is False

    def test_different_version(self):
        assert VersionCheck("1.2.0", "1.3.0").update_available is True

    @pytest.mark.parametrize("current,latest", [
        (UNKNOWN_VERSION, "1.3.0"),
        ("1.2.0", UNKNOWN_VERSION),
        (UNKNOWN_VERSION, UNKNOWN_VERSION),
    ])
    def test_unknown_never_updates(self, current, latest):
        assert VersionCheck(current, latest).update_available is False


class TestVersionResolver:

    def test_up_to_date(self, make_resolver):
        resolver = make_resolver(current_output="1.2.0", tag="n8n@1.2.0")

        result = resolver.check()

        assert (result.current, result.latest) == ("1.2.0", "1.2.0")
        assert resolver.is_update_available() is False

    def test_update_available(self, make_resolver):
        resolver = make_resolver()

        result = resolver.check()

        assert result.update_available is True
        assert result.latest == "1.3.0"

    def test_queries_running_container(self, runtime, make_resolver):
        resolver = make_resolver()

        resolver.current_version()

        container, command = runtime.exec.call_args.args
        assert container == "n8n"
        assert command == ["n8n", "--version"]

    def test_release_request(self, make_resolver):
        resolver = make_resolver()

        resolver.latest_version()

        args, kwargs = resolver.session.get.call_args
        assert args == (RELEASES_URL,)
        assert kwargs["timeout"] == 10.0

    def test_container_failure_is_unknown(self, runtime, make_resolver):
        resolver = make_resolver()
        runtime.exec.side_effect = CommandError(["podman", "exec"], 125, "no such container")

        assert resolver.current_version() == UNKNOWN_VERSION
        assert resolver.check().update_available is False

    def test_network_failure_is_unknown(self, make_resolver):
        resolver = make_resolver(error=requests.ConnectionError("offline"))

        assert resolver.latest_version() == UNKNOWN_VERSION
        assert resolver.check().update_available is False

    def test_http_error_is_unknown(self, make_resolver):
        resolver = make_resolver(status_error=requests.HTTPError("403 rate limited"))

        assert resolver.latest_version() == UNKNOWN_VERSION

    def test_unparseable_tag_is_unknown(self, make_resolver):
        resolver = make_resolver(tag="nightly")

        assert resolver.latest_version() == UNKNOWN_VERSION

    def test_missing_tag_is_unknown(self, make_resolver):
        resolver = make_resolver(tag=None)

        assert resolver.latest_version() == UNKNOWN_VERSION

    def test_query_raises_for_strict_callers(self, make_resolver):
        resolver = make_resolver(current_output="")

        with pytest.raises(VersionUnknown):
            resolver.query_current_version()
