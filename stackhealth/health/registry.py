"""Probe registry — ordered, named probes configured once at startup.

The default registry mirrors the stack's health script: container state,
service health, connectivity, resource usage and log scan for the broker,
the bridge and the companion server. Extra probes come from the YAML config.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any

from stackhealth.config import AppConfig, ProbeSpec, Settings
from stackhealth.errors import ConfigError, DuplicateNameError
from stackhealth.health.models import Probe, ProbeKind, Section, Status
from stackhealth.health.probes import validate_probe

logger = logging.getLogger(__name__)


class ProbeRegistry:
    """Probes keyed by name, kept in registration order."""

    def __init__(self) -> None:
        self._probes: dict[str, Probe] = {}
        self._frozen = False

    def register(self, probe: Probe) -> Probe:
        """Add a probe. Raises DuplicateNameError if the name is taken."""
        if self._frozen:
            raise ConfigError(f"Registry is frozen; cannot register '{probe.name}'")
        if probe.name in self._probes:
            raise DuplicateNameError(probe.name)
        validate_probe(probe)
        self._probes[probe.name] = probe
        logger.debug("Registered probe %s (%s -> %s)", probe.name, probe.kind.value, probe.target)
        return probe

    def freeze(self) -> ProbeRegistry:
        """Disallow further registration; called before the first cycle."""
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def all(self) -> list[Probe]:
        return list(self._probes.values())

    def get(self, name: str) -> Probe | None:
        return self._probes.get(name)

    def names(self) -> list[str]:
        return list(self._probes)

    def __len__(self) -> int:
        return len(self._probes)

    def __iter__(self) -> Iterator[Probe]:
        return iter(self.all())

    def __contains__(self, name: object) -> bool:
        return name in self._probes


# ── Builders ─────────────────────────────────────────────────────────────────


def build_default_registry(settings: Settings) -> ProbeRegistry:
    """Register the standard checks for the broker / bridge / companion stack."""
    reg = ProbeRegistry()
    timeout = settings.probe_timeout
    broker = settings.broker_service
    bridge = settings.bridge_service
    companion = settings.companion_service
    services = (broker, bridge, companion)

    # Container status
    for service in services:
        reg.register(Probe(
            name=f"{service}-state", kind=ProbeKind.PROCESS_STATE,
            target=service, timeout=timeout, critical=True,
        ))

    # Service health
    reg.register(Probe(
        name=f"{broker}-uptime", kind=ProbeKind.APP_LEVEL_PING,
        target=broker, timeout=timeout, critical=True,
    ))
    reg.register(Probe(
        name=f"{bridge}-ui", kind=ProbeKind.HTTP_REACHABLE,
        target=f"http://localhost:{settings.ui_port}", timeout=timeout, critical=True,
    ))
    reg.register(Probe(
        name=f"{companion}-api", kind=ProbeKind.HTTP_REACHABLE,
        target=f"http://localhost:{settings.matter_port}", timeout=timeout, critical=True,
    ))

    # Connectivity
    reg.register(Probe(
        name=f"{broker}-mqtt-port", kind=ProbeKind.PORT_REACHABLE,
        target=f"localhost:{settings.mqtt_port}", timeout=timeout,
    ))
    reg.register(Probe(
        name=f"{bridge}-to-{broker}", kind=ProbeKind.CONTAINER_PING,
        target=bridge, timeout=timeout, options={"host": broker},
    ))
    coordinator = settings.effective_coordinator_host
    reg.register(Probe(
        name="coordinator", kind=ProbeKind.CONTAINER_PING,
        target=bridge, timeout=timeout, on_failure=Status.WARN,
        options={"host": coordinator},
    ))

    # Resource usage
    reg.register(Probe(
        name="resources", kind=ProbeKind.RESOURCE_USAGE,
        target="docker", timeout=timeout, on_failure=Status.WARN,
        options={"cpu_warn_percent": settings.cpu_warn_percent},
    ))

    # Log scan
    for service in services:
        reg.register(Probe(
            name=f"{service}-logs", kind=ProbeKind.LOG_SCAN,
            target=service, timeout=timeout,
            options={
                "tail_lines": settings.log_tail_lines,
                "patterns": list(settings.error_patterns),
            },
        ))

    logger.info("Default registry: %d probes", len(reg))
    return reg


def probe_from_spec(spec: ProbeSpec, settings: Settings) -> Probe:
    """Turn a YAML probe declaration into a Probe."""
    try:
        kind = ProbeKind(spec.kind)
        section = Section(spec.section) if spec.section else None
        on_failure = Status(spec.on_failure)
    except ValueError as e:
        raise ConfigError(f"Probe '{spec.name}': {e}") from e
    if on_failure == Status.OK:
        raise ConfigError(f"Probe '{spec.name}': on_failure cannot be 'ok'")

    options: dict[str, Any] = dict(spec.options)
    if kind == ProbeKind.LOG_SCAN:
        options.setdefault("tail_lines", settings.log_tail_lines)
        options.setdefault("patterns", list(settings.error_patterns))
    elif kind == ProbeKind.RESOURCE_USAGE:
        options.setdefault("cpu_warn_percent", settings.cpu_warn_percent)

    probe = Probe(
        name=spec.name,
        kind=kind,
        target=spec.target,
        timeout=spec.timeout if spec.timeout is not None else settings.probe_timeout,
        critical=spec.critical,
        section=section,
        on_failure=on_failure,
        options=options,
    )
    validate_probe(probe)
    return probe


def registry_from_config(config: AppConfig) -> ProbeRegistry:
    """Default probes (unless disabled) followed by the config file's probes."""
    if config.include_defaults:
        reg = build_default_registry(config.settings)
    else:
        reg = ProbeRegistry()
    for spec in config.probes:
        reg.register(probe_from_spec(spec, config.settings))
    if not len(reg):
        raise ConfigError("No probes configured")
    return reg.freeze()
