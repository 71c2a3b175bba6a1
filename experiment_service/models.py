"""Data models for experiment tracking."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ExperimentKind(str, Enum):
    TRAFFIC_JOB = "traffic-job"
    NETWORK_DELAY = "network-delay"


class ExperimentStatus(str, Enum):
    """Stored lifecycle state of a registry record."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self is not ExperimentStatus.ACTIVE


class OutcomeStatus(str, Enum):
    """Status reported back to callers of launch and stop operations."""

    STARTED = "started"
    ACTIVE = "active"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
    ERROR = "error"


class ErrorKind(str, Enum):
    IMAGE_UNAVAILABLE = "image_unavailable"
    CONTAINER_CREATE_FAILED = "container_create_failed"
    CONTAINER_START_FAILED = "container_start_failed"
    RUNTIME_UNAVAILABLE = "runtime_unavailable"
    NONZERO_EXIT = "nonzero_exit"
    STOP_FAILED = "stop_failed"


@dataclass(frozen=True)
class TrafficTarget:
    target_url: str
    rps: int
    duration_seconds: int
    max_vus: int

    @property
    def vus(self) -> int:
        return min(self.rps * 2, self.max_vus)


@dataclass(frozen=True)
class NetworkDelayTarget:
    container_name: str
    delay_ms: int
    duration_seconds: int
    jitter_ms: int = 0

    @property
    def container_pattern(self) -> str:
        return f"re2:^{self.container_name}$"


ExperimentTarget = Union[TrafficTarget, NetworkDelayTarget]


@dataclass(frozen=True)
class ExperimentRecord:
    """Tracked lifecycle state of one launched workload.

    Records are immutable; writers derive a new value with ``dataclasses.replace``
    and hand it to the registry's conditional update.
    """

    id: str
    kind: ExperimentKind
    target: ExperimentTarget
    started_at: datetime
    status: ExperimentStatus = ExperimentStatus.ACTIVE
    container_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    stop_requested: bool = False

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def to_dict(self) -> Dict[str, Any]:
        """Convert record to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "target": dict(self.target.__dict__),
            "status": self.status.value,
            "container_id": self.container_id,
            "started_at": self.started_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }

    @classmethod
    def for_network_delay(
        cls,
        experiment_id: str,
        target: NetworkDelayTarget,
        *,
        container_id: str,
        started_at: datetime,
    ) -> "ExperimentRecord":
        return cls(
            id=experiment_id,
            kind=ExperimentKind.NETWORK_DELAY,
            target=target,
            container_id=container_id,
            started_at=started_at,
            expires_at=started_at + timedelta(seconds=target.duration_seconds),
        )

    @classmethod
    def for_traffic_job(
        cls,
        experiment_id: str,
        target: TrafficTarget,
        *,
        container_id: str,
        started_at: datetime,
    ) -> "ExperimentRecord":
        # Traffic jobs carry no TTL; only their completion monitor finalizes them.
        return cls(
            id=experiment_id,
            kind=ExperimentKind.TRAFFIC_JOB,
            target=target,
            container_id=container_id,
            started_at=started_at,
        )


@dataclass
class ContainerSpec:
    """Everything the runtime needs to create one workload container."""

    name: str
    image: str
    command: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    binds: List[str] = field(default_factory=list)
    network_mode: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    privileged: bool = False


@dataclass
class ContainerSummary:
    """One entry of a runtime container listing."""

    id: str
    names: List[str]
    labels: Dict[str, str] = field(default_factory=dict)
    state: str = ""

    def has_name(self, name: str) -> bool:
        return any(candidate.lstrip("/") == name for candidate in self.names)


@dataclass
class LaunchResult:
    """Synchronous outcome of a launch request."""

    experiment_id: str
    status: OutcomeStatus
    message: str
    error_kind: Optional[ErrorKind] = None
    # Internal diagnostic text; logged, never part of the public response.
    detail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None


@dataclass
class StopResult:
    """Outcome of a stop request."""

    experiment_id: str
    status: OutcomeStatus
    message: str
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None
