"""
Unit tests for worker identities.
"""

import os
from unittest.mock import patch

import pytest

from delayed.errors import LeaseFormatError
from delayed.identity import WorkerIdentity, host_prefix, local_hostname


class TestWorkerIdentity:
    """Tests for WorkerIdentity."""

    def test_current_identity(self):
        """Test the identity of the running process."""
        identity = WorkerIdentity.current()

        assert identity.host == local_hostname()
        assert identity.pid == os.getpid()
        assert identity.name == f"host:{local_hostname()} pid:{os.getpid()}"

    def test_parse_round_trips_name(self):
        """Test that a parsed identity equals the one that wrote it."""
        identity = WorkerIdentity(host="web-1.example", pid=4242)

        assert WorkerIdentity.parse(identity.name) == identity
        assert str(identity) == "host:web-1.example pid:4242"

    @pytest.mark.parametrize(
        "value",
        ["", "worker-1", "host:web-1", "host:web-1 pid:abc", "host:web 1 pid:1"],
    )
    def test_parse_rejects_malformed(self, value: str):
        """Test that malformed lease holders raise LeaseFormatError."""
        with pytest.raises(LeaseFormatError, match="Bad locked_by format"):
            WorkerIdentity.parse(value)

    def test_resolve_uses_override(self):
        """Test that a configured worker name wins over the process identity."""
        identity = WorkerIdentity.resolve("host:fixed pid:1")

        assert identity == WorkerIdentity(host="fixed", pid=1)

    def test_resolve_rejects_free_form_override(self):
        """Test that a worker name outside the lease holder format is refused."""
        with pytest.raises(LeaseFormatError):
            WorkerIdentity.resolve("worker-1")

    def test_resolve_defaults_to_current(self):
        """Test that no override yields the process identity."""
        assert WorkerIdentity.resolve(None) == WorkerIdentity.current()

    def test_host_prefix(self):
        """Test the prefix shared by identities on one host."""
        identity = WorkerIdentity(host="web-1", pid=7)

        assert identity.name.startswith(host_prefix("web-1"))
        assert not identity.name.startswith(host_prefix("web"))


class TestLiveness:
    """Tests for the liveness check."""

    def test_current_process_is_alive(self):
        """Test that the running process is reported alive."""
        assert WorkerIdentity.current().is_alive() is True

    def test_dead_local_process(self):
        """Test that a missing local process is reported dead."""
        identity = WorkerIdentity(host=local_hostname(), pid=4242)

        with patch("delayed.identity.os.kill", side_effect=ProcessLookupError):
            assert identity.is_alive() is False

    def test_foreign_local_process_is_alive(self):
        """Test that a process owned by another user counts as alive."""
        identity = WorkerIdentity(host=local_hostname(), pid=1)

        with patch("delayed.identity.os.kill", side_effect=PermissionError):
            assert identity.is_alive() is True

    def test_other_host_is_never_signalled(self):
        """Test that identities from other hosts are assumed alive."""
        identity = WorkerIdentity(host="otherhost", pid=123)

        with patch("delayed.identity.os.kill") as kill:
            assert identity.is_local is False
            assert identity.is_alive() is True

        kill.assert_not_called()
