"""External systems the health core queries but does not implement."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stackhealth.collaborators.compose import CmdResult, ComposeOrchestrator, ContainerStats
from stackhealth.collaborators.network import HttpClient, NetworkClient

if TYPE_CHECKING:
    from stackhealth.config import Settings


@dataclass
class Collaborators:
    """Bundle handed to every probe."""

    orchestrator: ComposeOrchestrator
    network: NetworkClient = field(default_factory=NetworkClient)
    http: HttpClient = field(default_factory=HttpClient)

    @classmethod
    def from_settings(cls, settings: Settings) -> Collaborators:
        return cls(
            orchestrator=ComposeOrchestrator(
                compose_file=settings.compose_file,
                project_dir=settings.project_dir,
            ),
        )


__all__ = [
    "CmdResult",
    "Collaborators",
    "ComposeOrchestrator",
    "ContainerStats",
    "HttpClient",
    "NetworkClient",
]
