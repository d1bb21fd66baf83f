"""Health subsystem — probes, registry, aggregator, reporter."""

from .aggregator import Aggregator, CancelToken
from .classifier import classify
from .models import CycleReport, Probe, ProbeKind, ProbeResult, Section, Status
from .registry import ProbeRegistry, build_default_registry, registry_from_config
from .reporter import OutputFormat, Reporter, exit_code
