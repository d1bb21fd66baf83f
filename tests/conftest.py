"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Generator
from typing import Any

import httpx
import pytest

from stackhealth.collaborators import CmdResult, Collaborators, ContainerStats
from stackhealth.config import Settings


class FakeOrchestrator:
    """In-memory stand-in for ComposeOrchestrator.

    ``hang`` targets block until ``release`` is set; ``delays`` adds a sleep
    per target; ``errors`` raises the given exception for a target.
    """

    def __init__(
        self,
        states: dict[str, str] | None = None,
        logs: dict[str, list[str]] | None = None,
        exec_results: dict[str, CmdResult] | None = None,
        stats: list[ContainerStats] | None = None,
        available: bool = True,
    ) -> None:
        self.states = states or {}
        self.logs = logs or {}
        self.exec_results = exec_results or {}
        self.container_stats = stats or []
        self.available = available
        self.hang: set[str] = set()
        self.delays: dict[str, float] = {}
        self.errors: dict[str, BaseException] = {}
        self.release = threading.Event()
        self.calls: list[tuple[str, str]] = []
        self.commands: list[list[str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def _enter(self, method: str, target: str) -> None:
        with self._lock:
            self.calls.append((method, target))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if target in self.errors:
                raise self.errors[target]
            if target in self.hang:
                self.release.wait(10)
            if target in self.delays:
                time.sleep(self.delays[target])
        except BaseException:
            self._leave()
            raise

    def _leave(self) -> None:
        with self._lock:
            self.active -= 1

    def is_available(self, timeout: float | None = None) -> bool:
        return self.available

    def get_state(self, service: str, timeout: float | None = None) -> str:
        self._enter("get_state", service)
        try:
            return self.states.get(service, "unknown")
        finally:
            self._leave()

    def tail(self, service: str, n: int, timeout: float | None = None) -> list[str]:
        self._enter("tail", service)
        try:
            return self.logs.get(service, [])[-n:]
        finally:
            self._leave()

    def exec(self, container: str, argv: list[str], timeout: float | None = None) -> CmdResult:
        self._enter("exec", container)
        try:
            self.commands.append(list(argv))
            key = f"{container}:{argv[0]}"
            return self.exec_results.get(key, CmdResult(0, "", "", 1))
        finally:
            self._leave()

    def stats(self, timeout: float | None = None) -> list[ContainerStats]:
        self._enter("stats", "docker")
        try:
            return list(self.container_stats)
        finally:
            self._leave()


class FakeNetwork:
    def __init__(self, open_ports: set[tuple[str, int]] | None = None) -> None:
        self.open_ports = open_ports or set()
        self.errors: dict[tuple[str, int], BaseException] = {}

    def connect(self, host: str, port: int, timeout: float) -> bool:
        if (host, port) in self.errors:
            raise self.errors[(host, port)]
        if (host, port) not in self.open_ports:
            raise ConnectionRefusedError(111, "Connection refused")
        return True


class FakeHttp:
    def __init__(self, codes: dict[str, int | BaseException] | None = None) -> None:
        self.codes = codes or {}

    def get(self, url: str, timeout: float) -> int:
        outcome = self.codes.get(url)
        if outcome is None:
            raise httpx.ConnectError("Connection refused")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {"probe_timeout": 1.0, "cycle_slack": 1.0}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def orchestrator() -> Generator[FakeOrchestrator, None, None]:
    fake = FakeOrchestrator(
        states={"mosquitto": "running", "zigbee2mqtt": "running", "matter-server": "running"},
    )
    yield fake
    # unblock any worker left hanging by a timeout test
    fake.release.set()


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def http() -> FakeHttp:
    return FakeHttp()


@pytest.fixture
def collab(orchestrator: FakeOrchestrator, network: FakeNetwork, http: FakeHttp) -> Collaborators:
    return Collaborators(orchestrator=orchestrator, network=network, http=http)  # type: ignore[arg-type]
