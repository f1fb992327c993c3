"""
Worker identity and liveness probing.

A worker identifies itself on every lease it takes as ``host:<hostname> pid:<pid>``.
Encoding the host and pid lets any worker on the same host tell whether the
lease holder is still running, which is how crashed workers are detected
without a heartbeat table.
"""

import logging
import os
import re
import socket
from dataclasses import dataclass

from delayed.errors import LeaseFormatError

logger = logging.getLogger(__name__)

IDENTITY_FORMAT = re.compile(r"^host:([\w\-.]+) pid:(\d+)$")


def local_hostname() -> str:
    """Get the host name used in worker identities."""
    return socket.gethostname()


def host_prefix(hostname: str) -> str:
    """
    Prefix shared by every identity on a host.

    Args:
        hostname: The host name.

    Returns:
        Prefix such as ``host:web-1 ``.
    """
    return f"host:{hostname} "


@dataclass(frozen=True)
class WorkerIdentity:
    """
    Identity of one worker process.

    Two identities are equal when host and pid are equal, so an identity
    parsed back from ``locked_by`` compares equal to the worker that wrote it.
    """

    host: str
    pid: int

    @classmethod
    def current(cls) -> "WorkerIdentity":
        """Identity of the running process."""
        return cls(host=local_hostname(), pid=os.getpid())

    @classmethod
    def parse(cls, value: str) -> "WorkerIdentity":
        """
        Parse a ``locked_by`` value.

        Args:
            value: The identity string.

        Returns:
            The parsed identity.

        Raises:
            LeaseFormatError: If the value is not a worker identity.
        """
        match = IDENTITY_FORMAT.match(value or "")
        if match is None:
            raise LeaseFormatError(f"Bad locked_by format: {value!r}")
        return cls(host=match.group(1), pid=int(match.group(2)))

    @classmethod
    def resolve(cls, override: str | None = None) -> "WorkerIdentity":
        """
        Identity for a worker, honoring a configured override.

        Fixed worker pools set an override that survives restarts so a
        restarted worker resumes the leases it held before crashing.
        """
        if override:
            return cls.parse(override)
        return cls.current()

    @property
    def name(self) -> str:
        """The string stored in ``locked_by``."""
        return f"host:{self.host} pid:{self.pid}"

    @property
    def is_local(self) -> bool:
        """Check if the identity belongs to this host."""
        return self.host == local_hostname()

    def is_alive(self) -> bool:
        """
        Check whether the process is still running.

        Only processes on this host can be signalled. Identities from other
        hosts are reported alive since nothing is known about them.
        """
        if not self.is_local:
            return True
        try:
            os.kill(self.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # The pid exists but belongs to another user.
            return True
        return True

    def __str__(self) -> str:
        return self.name
