"""Map raw probe failures onto the fixed error taxonomy.

Reporter output and tests depend on ErrorKind, never on raw message text.
"""

from __future__ import annotations

import errno
import socket
import subprocess
from concurrent.futures import TimeoutError as FutureTimeoutError

import httpx
import yaml
from pydantic import ValidationError

from stackhealth.errors import (
    ConfigError,
    ErrorKind,
    OrchestratorUnavailableError,
    ProbeFailure,
)

_UNREACHABLE_ERRNOS = frozenset({
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EHOSTDOWN,
})

# Lower-cased fragments of raw tool output, checked in order
_MESSAGE_HINTS: tuple[tuple[str, ErrorKind], ...] = (
    ("cannot connect to the docker daemon", ErrorKind.ORCHESTRATOR_UNAVAILABLE),
    ("docker: command not found", ErrorKind.ORCHESTRATOR_UNAVAILABLE),
    ("is the docker daemon running", ErrorKind.ORCHESTRATOR_UNAVAILABLE),
    ("timed out", ErrorKind.TIMEOUT),
    ("timeout", ErrorKind.TIMEOUT),
    ("connection refused", ErrorKind.UNREACHABLE),
    ("name or service not known", ErrorKind.UNREACHABLE),
    ("temporary failure in name resolution", ErrorKind.UNREACHABLE),
    ("no route to host", ErrorKind.UNREACHABLE),
    ("network is unreachable", ErrorKind.UNREACHABLE),
    ("bad address", ErrorKind.UNREACHABLE),
    ("unknown host", ErrorKind.UNREACHABLE),
    ("100% packet loss", ErrorKind.UNREACHABLE),
)


def classify(raw_error: BaseException | str) -> ErrorKind:
    """Return the ErrorKind for an exception or a raw error message."""
    if isinstance(raw_error, str):
        return _classify_message(raw_error)

    if isinstance(raw_error, ProbeFailure):
        return raw_error.kind
    if isinstance(raw_error, OrchestratorUnavailableError):
        return ErrorKind.ORCHESTRATOR_UNAVAILABLE
    if isinstance(raw_error, (ConfigError, ValidationError, yaml.YAMLError)):
        return ErrorKind.CONFIG_ERROR

    # Timeouts first: socket.timeout is an OSError subclass
    if isinstance(raw_error, (
        TimeoutError,
        FutureTimeoutError,
        subprocess.TimeoutExpired,
        httpx.TimeoutException,
    )):
        return ErrorKind.TIMEOUT

    if isinstance(raw_error, (httpx.NetworkError, socket.gaierror)):
        return ErrorKind.UNREACHABLE
    if isinstance(raw_error, httpx.HTTPStatusError):
        return ErrorKind.UNHEALTHY
    if isinstance(raw_error, ConnectionError):
        return ErrorKind.UNREACHABLE
    if isinstance(raw_error, OSError) and raw_error.errno in _UNREACHABLE_ERRNOS:
        return ErrorKind.UNREACHABLE

    if isinstance(raw_error, subprocess.CalledProcessError):
        output = raw_error.stderr or raw_error.output or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return _classify_message(output)

    return _classify_message(str(raw_error))


def _classify_message(message: str) -> ErrorKind:
    text = message.lower()
    for fragment, kind in _MESSAGE_HINTS:
        if fragment in text:
            return kind
    return ErrorKind.UNHEALTHY
