"""
Pipeline Orchestrator - Resolves, sequences and gates pipeline stages.

Features:
- Resolution before any work: stage selection, per-run policy overrides,
  ordering, artifact dependency and required config/secret checks
- Strictly sequential dispatch with per-stage gate enforcement
- Ephemeral services acquired per declared dependency and always released
- Artifact threading between stages
- An append-only report that is valid even after an early abort

Run states::

    NotStarted -> Running(i) -> Running(i+1) | Aborted(i, cause) | Completed
"""

from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from ..exceptions import (
    ConfigurationError,
    InfrastructureError,
    ShipgateError,
    StageExecutionError,
)
from .gate import GateDecision, GateEnforcer
from .protocol import (
    ErrorKind,
    GatePolicy,
    PipelineStage,
    RunContext,
    ServiceKind,
    StageOutcome,
    StageResult,
    StageStatus,
)
from .report import HardFailure, OverallStatus, Report, ReportAggregator, ReportExporter
from .services import (
    DEFAULT_PROBE_INTERVAL,
    DEFAULT_READINESS_TIMEOUT,
    ServiceProvisioner,
    default_definitions,
)
from .substrate import DockerSubstrate, ExecutionSubstrate

logger = logging.getLogger(__name__)

ProvisionerFactory = Callable[[str], ServiceProvisioner]


class RunState(str, enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    ABORTED = "aborted"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PlannedStage:
    """A stage resolved for one run.  Immutable once the run starts."""

    index: int
    stage: PipelineStage
    policy: GatePolicy
    skip_reason: Optional[str] = None

    @property
    def name(self) -> str:
        return self.stage.name

    @property
    def display_name(self) -> str:
        return self.stage.display_name

    @property
    def required_services(self) -> FrozenSet[ServiceKind]:
        return frozenset(self.stage.required_services)

    @property
    def required_artifacts(self) -> Tuple[str, ...]:
        return tuple(self.stage.required_artifacts)

    @property
    def produced_artifacts(self) -> Tuple[str, ...]:
        return tuple(self.stage.produced_artifacts)


@dataclass
class PipelineRun:
    """Mutable bookkeeping for one invocation."""

    run_id: str
    plan: Tuple[PlannedStage, ...]
    state: RunState = RunState.NOT_STARTED
    current_index: Optional[int] = None
    results: Dict[str, StageResult] = field(default_factory=dict)
    artifacts: Dict[str, Any] = field(default_factory=dict)
    abort_cause: Optional[ShipgateError] = None


class PipelineOrchestrator:
    """Compose and execute pipeline stages in canonical order.

    Parameters
    ----------
    stages : list[PipelineStage]
        The stage catalog.  ``config["stages"]`` selects from it.
    config : dict
        Flat configuration dict (from ``config_loader.build_unified_config``).
    substrate : ExecutionSubstrate | None
        Runs step specs.  Defaults to ``DockerSubstrate``.
    provisioner : ServiceProvisioner | callable | None
        A provisioner instance, or a factory called with the run id.
        Defaults to a docker-backed ``ServiceProvisioner`` per run.
    secrets : dict | None
        Signing keys and registry credentials (from
        ``config_loader.load_secrets``).
    gate : GateEnforcer | None
        Gate enforcer; a default one is created when omitted.

    Example
    -------
    ::

        pipeline = PipelineOrchestrator(
            stages=build_default_stages(config),
            config=config,
            secrets=load_secrets(),
        )
        report, error = pipeline.run("/path/to/repo")
    """

    def __init__(
        self,
        stages: Sequence[PipelineStage],
        config: Mapping[str, Any],
        substrate: Optional[ExecutionSubstrate] = None,
        provisioner: Optional[Union[ServiceProvisioner, ProvisionerFactory]] = None,
        secrets: Optional[Mapping[str, str]] = None,
        gate: Optional[GateEnforcer] = None,
    ):
        self.catalog = list(stages)
        self.config = dict(config)
        self.secrets = dict(secrets or {})
        self.gate = gate or GateEnforcer()
        self._substrate = substrate
        self._provisioner = provisioner
        self.last_run: Optional[PipelineRun] = None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _select(self) -> List[PipelineStage]:
        names = [s.name for s in self.catalog]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate stage names: {duplicates}")

        selection = self.config.get("stages", "all")
        if selection in (None, "all"):
            return list(self.catalog)
        if isinstance(selection, str):
            selection = [s.strip() for s in selection.split(",") if s.strip()]

        by_name = {s.name: s for s in self.catalog}
        unknown = [n for n in selection if n not in by_name]
        if unknown:
            raise ConfigurationError(
                f"Unknown stages {unknown}.  Available: {sorted(by_name)}"
            )
        repeated = sorted({n for n in selection if list(selection).count(n) > 1})
        if repeated:
            raise ConfigurationError(f"Stages selected more than once: {repeated}")
        if not selection:
            raise ConfigurationError("No stages selected")
        return [by_name[n] for n in selection]

    def _policy_for(self, stage: PipelineStage) -> GatePolicy:
        overrides = self.config.get("gate_policies") or {}
        raw = overrides.get(stage.name)
        if raw is None:
            return GatePolicy(stage.policy)
        try:
            return GatePolicy(str(raw).lower())
        except ValueError as exc:
            raise ConfigurationError(
                f"Invalid gate policy '{raw}' for stage '{stage.name}'",
                stage_name=stage.name,
            ) from exc

    def _skip_reason(self, stage: PipelineStage) -> Optional[str]:
        hook = getattr(stage, "skip_reason", None)
        if hook is None:
            return None
        return hook(self.config, self.secrets)

    def resolve(self, seeded_artifacts: Sequence[str] = ()) -> Tuple[PlannedStage, ...]:
        """Validate everything a run needs and return the frozen plan.

        Raises
        ------
        ConfigurationError
            Unknown or duplicate stages, an invalid policy override, an
            artifact no earlier stage produces, or a stage's missing
            config/secrets.  Raised before any stage runs.
        """
        selected = sorted(self._select(), key=lambda s: s.phase_number)

        overrides = self.config.get("gate_policies") or {}
        catalog_names = {s.name for s in self.catalog}
        stray = sorted(n for n in overrides if n not in catalog_names)
        if stray:
            raise ConfigurationError(f"gate_policies names unknown stages: {stray}")

        plan = tuple(
            PlannedStage(
                index=i,
                stage=stage,
                policy=self._policy_for(stage),
                skip_reason=self._skip_reason(stage),
            )
            for i, stage in enumerate(selected)
        )

        available = set(seeded_artifacts)
        problems: List[str] = []
        for planned in plan:
            if planned.skip_reason:
                logger.info("%s will be skipped: %s", planned.display_name, planned.skip_reason)
                continue
            missing = [a for a in planned.required_artifacts if a not in available]
            if missing:
                problems.append(
                    f"{planned.name}: requires artifact(s) {missing} that no "
                    f"earlier stage produces (seed them with --artifact)"
                )
            available.update(planned.produced_artifacts)

            for issue in planned.stage.config_issues(self.config, self.secrets):
                problems.append(f"{planned.name}: {issue}")

        if problems:
            raise ConfigurationError("Pipeline configuration invalid: " + "; ".join(problems))
        return plan

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def _build_provisioner(self, run_id: str) -> ServiceProvisioner:
        if self._provisioner is None:
            return ServiceProvisioner(
                run_id=run_id,
                definitions=default_definitions(
                    k3s_image=self.config.get("cluster_image") or "rancher/k3s:v1.28.5-k3s1",
                    registry_image=self.config.get("registry_image") or "registry:2",
                    data_store_image=self.config.get("data_store_image") or "solr:9.6",
                ),
                readiness_timeout=float(
                    self.config.get("service_readiness_timeout") or DEFAULT_READINESS_TIMEOUT
                ),
                probe_interval=float(
                    self.config.get("service_probe_interval") or DEFAULT_PROBE_INTERVAL
                ),
            )
        if isinstance(self._provisioner, ServiceProvisioner):
            return self._provisioner
        return self._provisioner(run_id)

    def _build_context(self, target_path: str) -> RunContext:
        """Build the per-run ``RunContext``.

        Subclass or replace this method to inject a custom substrate or
        provisioner.
        """
        run_id = uuid.uuid4().hex[:12]
        substrate = self._substrate
        if substrate is None:
            step_timeout = self.config.get("step_timeout") or None
            substrate = DockerSubstrate(
                docker_bin=self.config.get("docker_bin") or "docker",
                timeout=step_timeout,
            )
        provisioner = self._build_provisioner(run_id)
        return RunContext(
            run_id=run_id,
            config=self.config,
            target_path=target_path,
            secrets=self.secrets,
            substrate=substrate,
            provisioner=provisioner,
            network=getattr(provisioner, "network_name", None),
        )

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        target_path: str,
        artifacts: Optional[Mapping[str, Any]] = None,
    ) -> Tuple[Report, Optional[ShipgateError]]:
        """Execute the pipeline.

        Parameters
        ----------
        target_path : str
            Filesystem path to the source tree being built.
        artifacts : dict | None
            Artifacts seeded from outside the run (e.g. an ``image_ref``
            when running only the delivery stages).

        Returns
        -------
        tuple[Report, ShipgateError | None]
            The finalized report and the first hard failure, if any.

        Raises
        ------
        ConfigurationError
            Resolution failed; no stage ran and no service was started.
        """
        seeded = dict(artifacts or {})
        plan = self.resolve(seeded_artifacts=tuple(seeded))
        ctx = self._build_context(target_path)

        run = PipelineRun(run_id=ctx.run_id, plan=plan, artifacts=seeded)
        self.last_run = run
        aggregator = ReportAggregator(ctx.run_id)
        first_failure: Optional[HardFailure] = None
        pipeline_start = time.time()

        logger.info(
            "Pipeline %s starting with %d stages targeting %s",
            ctx.run_id,
            len(plan),
            target_path,
        )

        run.state = RunState.RUNNING
        try:
            for planned in plan:
                run.current_index = planned.index
                reason = planned.skip_reason or self._unproduced_reason(planned, run)
                if reason:
                    skipped = StageResult.skipped(planned.name, planned.policy, reason=reason)
                    aggregator.append(skipped)
                    run.results[planned.name] = skipped
                    logger.info("Skipping %s: %s", planned.display_name, reason)
                    continue
                result, decision, error = self._dispatch(planned, ctx, run)
                aggregator.append(result)
                run.results[planned.name] = result

                if not decision.should_proceed:
                    run.abort_cause = error
                    first_failure = HardFailure(
                        stage_name=planned.name,
                        error=decision.error or decision.reason,
                        error_kind=(decision.error_kind or ErrorKind.STAGE_EXECUTION).value,
                    )
                    break

            if first_failure is not None:
                for planned in plan[run.current_index + 1:]:
                    skipped = StageResult.skipped(
                        planned.name,
                        planned.policy,
                        reason=f"Run aborted at '{first_failure.stage_name}'",
                    )
                    aggregator.append(skipped)
                    run.results[planned.name] = skipped
                    logger.info("Skipping %s: run aborted", planned.display_name)
                run.state = RunState.ABORTED
                report = aggregator.finalize(OverallStatus.ABORTED, first_failure)
            else:
                run.state = RunState.COMPLETED
                report = aggregator.finalize(OverallStatus.COMPLETED)
        finally:
            if ctx.provisioner is not None:
                ctx.provisioner.release_all()

        logger.info(
            "Pipeline %s %s in %.1fs (%d stages, warnings=%s)",
            ctx.run_id,
            report.overall_status.value,
            time.time() - pipeline_start,
            len(report),
            report.has_warnings,
        )

        if self.config.get("export_reports") and self.config.get("report_dir"):
            try:
                ReportExporter(str(self.config["report_dir"])).export(report, run.artifacts)
            except OSError as exc:
                logger.error("Could not export report to %s: %s", self.config["report_dir"], exc)

        return report, run.abort_cause

    def _unproduced_reason(self, planned: PlannedStage, run: PipelineRun) -> Optional[str]:
        """Skip reason when every missing artifact's producer already reported
        an error (a soft or informational failure) or was itself skipped.

        A producer that succeeded without publishing its artifact is not
        covered; dispatch reports that as an infrastructure failure.
        """
        producers: Dict[str, str] = {}
        for earlier in run.plan[: planned.index]:
            for artifact in earlier.produced_artifacts:
                producers[artifact] = earlier.name

        unproduced = []
        for artifact in planned.required_artifacts:
            if artifact in run.artifacts:
                continue
            result = run.results.get(producers.get(artifact, ""))
            if result is None:
                return None
            if result.status is StageStatus.SKIPPED:
                unproduced.append(f"'{artifact}' ({result.stage_name} was skipped)")
            elif result.error is not None:
                unproduced.append(f"'{artifact}' ({result.stage_name} reported an error)")
            else:
                return None
        if not unproduced:
            return None
        return f"Required artifact {', '.join(unproduced)} was not produced"

    def _dispatch(
        self, planned: PlannedStage, ctx: RunContext, run: PipelineRun
    ) -> Tuple[StageResult, GateDecision, Optional[ShipgateError]]:
        """Acquire services, execute one stage and gate the outcome."""
        stage_start = time.time()
        started = datetime.now(timezone.utc).isoformat()
        logger.info("Starting %s ...", planned.display_name)

        outcome = None
        failure: Optional[ShipgateError] = None
        try:
            self._bind_services(planned, ctx)
            missing = [a for a in planned.required_artifacts if a not in run.artifacts]
            if missing:
                raise InfrastructureError(
                    f"Required artifact(s) {missing} were not produced",
                    stage_name=planned.name,
                )
            outcome = planned.stage.execute(ctx, MappingProxyType(dict(run.artifacts)))
        except StageExecutionError as exc:
            if exc.stage_name is None:
                exc.stage_name = planned.name
            outcome = StageOutcome(output=str(exc), error=exc)
        except ShipgateError as exc:
            if exc.stage_name is None:
                exc.stage_name = planned.name
            failure = exc
        except Exception as exc:
            logger.error("%s crashed: %s", planned.display_name, exc, exc_info=True)
            failure = InfrastructureError(
                f"{planned.display_name} crashed: {type(exc).__name__}: {exc}",
                stage_name=planned.name,
            )
            failure.__cause__ = exc

        duration = time.time() - stage_start
        ctx.phase_timings[planned.name] = duration

        if failure is not None:
            decision = self.gate.evaluate(planned.name, planned.policy, exc=failure)
            exit_code = getattr(failure, "exit_code", None)
            result = StageResult(
                stage_name=planned.name,
                status=decision.status,
                policy=planned.policy,
                output=getattr(failure, "output", ""),
                error=decision.error,
                error_kind=decision.error_kind,
                duration_seconds=duration,
                started_at=started,
                metadata={"exit_code": exit_code} if exit_code is not None else {},
            )
            return result, decision, failure

        decision = self.gate.evaluate(planned.name, planned.policy, outcome=outcome)
        produced = dict(outcome.artifacts)
        run.artifacts.update(produced)
        result = StageResult(
            stage_name=planned.name,
            status=decision.status,
            policy=planned.policy,
            output=outcome.output,
            error=decision.error,
            error_kind=decision.error_kind,
            duration_seconds=duration,
            started_at=started,
            artifacts=tuple(produced),
            metadata=outcome.metadata,
        )
        logger.info(
            "Completed %s in %.1fs (%s)",
            planned.display_name,
            duration,
            decision.status.value,
        )
        return result, decision, (outcome.error if not decision.should_proceed else None)

    def _bind_services(self, planned: PlannedStage, ctx: RunContext) -> None:
        required = planned.required_services
        if not required:
            return
        if ctx.provisioner is None:
            raise InfrastructureError(
                f"Stage '{planned.name}' needs services but no provisioner is configured",
                stage_name=planned.name,
            )
        for kind in ServiceKind:
            if kind not in required:
                continue
            handle = ctx.provisioner.acquire(kind)
            ctx.provisioner.bind(handle, planned.name)
            ctx.bind_service(handle)
