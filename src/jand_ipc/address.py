"""Endpoint address resolution.

The daemon listens on a .NET-style local pipe. On Windows that is a named
pipe in the ``\\\\.\\pipe\\`` namespace; everywhere else .NET maps the pipe
name onto a Unix-domain socket under ``/tmp`` with a ``CoreFxPipe_`` prefix.
"""

from __future__ import annotations

import sys

DEFAULT_PIPE_NAME = "jand"

WINDOWS_PIPE_PREFIX = "\\\\.\\pipe\\"
POSIX_SOCKET_PREFIX = "/tmp/CoreFxPipe_"


def is_windows(platform: str | None = None) -> bool:
    """Check whether *platform* (default: the running one) uses named pipes."""
    return (platform or sys.platform) == "win32"


def resolve_address(name: str | None = None, platform: str | None = None) -> str:
    """Resolve a logical endpoint name to a concrete local address.

    Args:
        name: Logical pipe name, or an absolute path used verbatim.
            Defaults to ``"jand"``.
        platform: ``sys.platform``-style identifier, for resolving on behalf
            of another platform. Defaults to the running platform.

    Returns:
        The socket path (POSIX) or pipe path (Windows).

    Examples:
        >>> resolve_address("myapp", platform="linux")
        '/tmp/CoreFxPipe_myapp'
        >>> resolve_address("/custom/sock", platform="linux")
        '/custom/sock'
        >>> resolve_address("myapp", platform="win32")
        '\\\\\\\\.\\\\pipe\\\\myapp'
    """
    name = name or DEFAULT_PIPE_NAME

    if is_windows(platform):
        if name.startswith(("/", "\\")):
            return name
        return WINDOWS_PIPE_PREFIX + name

    if name.startswith("/"):
        return name
    return POSIX_SOCKET_PREFIX + name
