"""
Pipeline Protocol - Defines the stage interface and the per-run context.

Every pipeline stage implements the ``PipelineStage`` protocol.  Stages are
composed into one ordered run by ``PipelineOrchestrator``.

The ``RunContext`` dataclass is constructed once per run and passed by
reference to every stage and to the service provisioner.  It replaces any
package-level client: service endpoints, configuration and secrets all
travel through it.

The ``StageOutcome`` dataclass is what a stage returns; the ``StageResult``
dataclass is the immutable record the orchestrator appends to the report
once the gate enforcer has classified the outcome.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import (
    Any,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from ..exceptions import StageExecutionError


class GatePolicy(str, enum.Enum):
    """Enforcement policy declared by each stage."""

    HARD = "hard"
    SOFT = "soft"
    INFORMATIONAL = "informational"


class StageStatus(str, enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorKind(str, enum.Enum):
    """Where a stage error came from."""

    STAGE_EXECUTION = "stage_execution"
    INFRASTRUCTURE = "infrastructure"
    SERVICE_UNAVAILABLE = "service_unavailable"


class ServiceKind(str, enum.Enum):
    """Ephemeral backing services a stage may depend on."""

    REGISTRY = "registry"
    CLUSTER = "cluster"
    DATA_STORE = "data_store"


class ExitClass(str, enum.Enum):
    OK = "ok"
    FINDING = "finding"
    EXECUTION_FAILURE = "execution_failure"


@dataclass(frozen=True)
class OutcomeMap:
    """Per-stage declaration of what a non-zero exit code means.

    Scanners commonly use one exit code for "ran and found issues" and
    another for "could not run".  Each stage declares the finding codes
    up front; every other non-zero code is an execution failure.

    Attributes
    ----------
    finding_codes : frozenset[int]
        Exit codes meaning the tool ran correctly and reported findings.
    any_nonzero_is_finding : bool
        For build and test tools, where every non-zero exit is a failed
        build or failed test rather than a broken tool.
    findings_from_output : bool
        The tool exits 0 even with findings; findings are detected from
        its output by the stage instead.
    """

    finding_codes: FrozenSet[int] = frozenset()
    any_nonzero_is_finding: bool = False
    findings_from_output: bool = False

    def classify(self, exit_code: int) -> ExitClass:
        if exit_code == 0:
            return ExitClass.OK
        if self.any_nonzero_is_finding or exit_code in self.finding_codes:
            return ExitClass.FINDING
        return ExitClass.EXECUTION_FAILURE


@dataclass
class StageOutcome:
    """What a stage's ``execute`` returns.

    ``error`` is ``None`` on success.  ``artifacts`` holds the values this
    stage produced for later stages (e.g. a built image reference).
    """

    output: str = ""
    error: Optional[StageExecutionError] = None
    artifacts: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.error is None


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class StageResult:
    """Immutable record of one stage in the run report.

    Attributes
    ----------
    stage_name : str
        Identifier matching ``PipelineStage.name``.
    status : StageStatus
        Gate-classified status.
    policy : GatePolicy
        The policy the stage ran under (after config overrides).
    output : str
        Raw stage output, preserved verbatim.
    error : str | None
        Error text if the stage returned or raised one.  Informational
        stages keep their error here even though status is ``success``.
    error_kind : ErrorKind | None
        Classification of ``error``.
    duration_seconds : float
        Wall-clock execution time.
    started_at : str
        ISO-8601 UTC timestamp of dispatch.
    artifacts : tuple[str, ...]
        Names of artifacts this stage produced.
    metadata : Mapping
        Stage-specific metadata (exit code, image, finding counts).
    """

    stage_name: str
    status: StageStatus
    policy: GatePolicy = GatePolicy.HARD
    output: str = ""
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_seconds: float = 0.0
    started_at: str = field(default_factory=_utc_now)
    artifacts: Tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def skipped(
        cls, stage_name: str, policy: GatePolicy, reason: str
    ) -> "StageResult":
        return cls(
            stage_name=stage_name,
            status=StageStatus.SKIPPED,
            policy=policy,
            metadata={"skip_reason": reason},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_name": self.stage_name,
            "status": self.status.value,
            "policy": self.policy.value,
            "output": self.output,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "started_at": self.started_at,
            "artifacts": list(self.artifacts),
            "metadata": dict(self.metadata),
        }


@dataclass
class RunContext:
    """Per-run state shared by reference with every stage.

    Attributes
    ----------
    run_id : str
        Unique identifier; names service instances and networks so that
        concurrent runs never share them.
    config : Mapping
        Read-only flat configuration from ``config_loader``.
    target_path : str
        Filesystem path of the source tree being built.
    secrets : Mapping
        Signing keys and registry credentials.  Never logged or reported.
    substrate : ExecutionSubstrate
        Runs each stage's ``StepSpec``.
    provisioner : ServiceProvisioner | None
        Owns service lifecycle; stages only read endpoints.
    network : str | None
        Per-run network that service-dependent steps join.
    phase_timings : dict
        Wall-clock seconds per stage, keyed by stage name.
    """

    run_id: str
    config: Mapping[str, Any] = field(default_factory=dict)
    target_path: str = "."
    secrets: Mapping[str, str] = field(default_factory=dict, repr=False)
    substrate: Any = None
    provisioner: Any = None
    network: Optional[str] = None
    phase_timings: Dict[str, float] = field(default_factory=dict)
    _handles: Dict[ServiceKind, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.config = MappingProxyType(dict(self.config))
        self.secrets = MappingProxyType(dict(self.secrets))

    def bind_service(self, handle: Any) -> None:
        """Expose a ready service to stages.  Called by the orchestrator."""
        self._handles[handle.kind] = handle

    @property
    def service_endpoints(self) -> Mapping[ServiceKind, str]:
        return MappingProxyType(
            {kind: handle.endpoint for kind, handle in self._handles.items()}
        )

    def endpoint(self, kind: ServiceKind) -> str:
        handle = self._handles.get(kind)
        if handle is None:
            raise KeyError(f"Service '{kind.value}' is not bound to this run")
        return handle.endpoint

    def service(self, kind: ServiceKind) -> Any:
        handle = self._handles.get(kind)
        if handle is None:
            raise KeyError(f"Service '{kind.value}' is not bound to this run")
        return handle


@runtime_checkable
class PipelineStage(Protocol):
    """Protocol that every pipeline stage must implement.

    Stages are composable, independently testable units that:
    1. Declare their name, order, policy and dependencies
    2. Report configuration problems before the run starts
    3. Execute exactly once against the run context and prior artifacts
    4. Return a ``StageOutcome`` whose ``error`` is ``None`` on success

    Structural subtyping means stages do not need to inherit from
    ``BaseStage``.  A stage may also define
    ``skip_reason(config, secrets)`` returning a reason to sit out the run.

    Example
    -------
    ::

        class MyStage:
            name = "my_stage"
            display_name = "My Custom Stage"
            phase_number = 2.5
            policy = GatePolicy.SOFT
            required_services = frozenset()
            required_artifacts = ()
            produced_artifacts = ()

            def config_issues(self, config, secrets):
                return []

            def execute(self, ctx, artifacts):
                return StageOutcome(output="ok")
    """

    @property
    def name(self) -> str:
        """Unique stage identifier, e.g. ``secret_scan``."""
        ...

    @property
    def display_name(self) -> str:
        ...

    @property
    def phase_number(self) -> float:
        """Numeric position in the canonical stage order."""
        ...

    @property
    def policy(self) -> GatePolicy:
        """Declared policy; the config may override it per run."""
        ...

    @property
    def required_services(self) -> FrozenSet[ServiceKind]:
        ...

    @property
    def required_artifacts(self) -> Tuple[str, ...]:
        ...

    @property
    def produced_artifacts(self) -> Tuple[str, ...]:
        ...

    def config_issues(
        self, config: Mapping[str, Any], secrets: Mapping[str, str]
    ) -> List[str]:
        """Return problems that must stop the run before it starts."""
        ...

    def execute(
        self, ctx: RunContext, artifacts: Mapping[str, Any]
    ) -> StageOutcome:
        """Run the underlying operation once and return its outcome.

        Raises ``InfrastructureError`` when the operation could not run.
        """
        ...
