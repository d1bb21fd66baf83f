"""Network collaborators — TCP connect and HTTP GET."""

from __future__ import annotations

import logging
import socket

import httpx

logger = logging.getLogger(__name__)


class NetworkClient:
    """Raw TCP reachability."""

    def connect(self, host: str, port: int, timeout: float) -> bool:
        """Open and close a TCP connection.

        Returns True; failures raise OSError subclasses (refused, DNS,
        socket timeout) so callers can classify them.
        """
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
        logger.debug("TCP %s:%d open", host, port)
        return True


class HttpClient:
    """Synchronous httpx client for reachability checks."""

    def __init__(self, transport: httpx.BaseTransport | None = None) -> None:
        self._transport = transport

    def get(self, url: str, timeout: float) -> int:
        """GET ``url`` and return the status code. httpx errors propagate.

        The response body is never read, so a server that sends headers and
        then stalls cannot hold the caller past the header read.
        """
        with httpx.Client(
            timeout=timeout, follow_redirects=True, transport=self._transport,
        ) as client, client.stream("GET", url) as resp:
            status = resp.status_code
        logger.debug("GET %s -> %d", url, status)
        return status
