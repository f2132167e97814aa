"""
Base Stage - Convenience base classes for pipeline stages.

While the ``PipelineStage`` protocol allows any object with the right
interface, ``BaseStage`` provides sensible defaults and normalises errors:

- ``StageExecutionError`` raised by ``_execute`` becomes the outcome error
- ``InfrastructureError`` propagates unchanged
- any other exception means the operation crashed before producing a
  result, and is wrapped into ``InfrastructureError``

``ToolStage`` adds the common shape of a wrapped tool: build one
``StepSpec``, run it once on the substrate, classify the exit code with the
stage's declared ``OutcomeMap``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..exceptions import InfrastructureError, StageExecutionError
from .protocol import (
    ExitClass,
    GatePolicy,
    OutcomeMap,
    RunContext,
    ServiceKind,
    StageOutcome,
)
from .step_spec import StepSpec
from .substrate import ExecResult

logger = logging.getLogger(__name__)

_STDERR_TAIL = 400

SEVERITY_LEVELS = ("low", "medium", "high", "critical")


def severities_at_or_above(threshold: str) -> List[str]:
    """``"high"`` -> ``["HIGH", "CRITICAL"]``.  Unknown thresholds mean all."""
    threshold = str(threshold).lower()
    if threshold not in SEVERITY_LEVELS:
        return [s.upper() for s in SEVERITY_LEVELS]
    index = SEVERITY_LEVELS.index(threshold)
    return [s.upper() for s in SEVERITY_LEVELS[index:]]


class BaseStage(ABC):
    """Abstract base class that satisfies the ``PipelineStage`` protocol.

    Subclasses must implement:
    - ``name``, ``display_name``, ``phase_number`` (as properties or class attrs)
    - ``_execute(ctx, artifacts)`` -- the core logic

    Optional overrides:
    - ``policy`` -- defaults to ``GatePolicy.HARD``
    - ``required_services`` / ``required_artifacts`` / ``produced_artifacts``
    - ``config_issues(config, secrets)`` -- defaults to no issues
    - ``skip_reason(config, secrets)`` -- defaults to always running
    """

    policy: GatePolicy = GatePolicy.HARD
    required_services: FrozenSet[ServiceKind] = frozenset()
    required_artifacts: Tuple[str, ...] = ()
    produced_artifacts: Tuple[str, ...] = ()

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def phase_number(self) -> float:
        ...

    def config_issues(
        self, config: Mapping[str, Any], secrets: Mapping[str, str]
    ) -> List[str]:
        """Override to reject a run before it starts."""
        return []

    def skip_reason(
        self, config: Mapping[str, Any], secrets: Mapping[str, str]
    ) -> Optional[str]:
        """Return why this stage sits out the run, or ``None`` to run it.

        A skipped stage is recorded as ``Skipped`` and neither checked for
        config issues nor counted as producing its artifacts.
        """
        return None

    @abstractmethod
    def _execute(
        self, ctx: RunContext, artifacts: Mapping[str, Any]
    ) -> StageOutcome:
        """Core stage logic.

        Raises
        ------
        StageExecutionError
            The operation ran and reported a failure or findings.
        InfrastructureError
            The operation could not run.
        """
        ...

    def execute(
        self, ctx: RunContext, artifacts: Mapping[str, Any]
    ) -> StageOutcome:
        """Run the stage once and normalise its errors."""
        try:
            outcome = self._execute(ctx, artifacts)
        except StageExecutionError as exc:
            if exc.stage_name is None:
                exc.stage_name = self.name
            return StageOutcome(output=str(exc), error=exc)
        except InfrastructureError as exc:
            if exc.stage_name is None:
                exc.stage_name = self.name
            raise
        except Exception as exc:
            logger.error("%s crashed: %s", self.display_name, exc, exc_info=True)
            raise InfrastructureError(
                f"{self.display_name} crashed: {type(exc).__name__}: {exc}",
                stage_name=self.name,
            ) from exc

        if outcome.error is not None and outcome.error.stage_name is None:
            outcome.error.stage_name = self.name
        return outcome


class ToolStage(BaseStage):
    """A stage that wraps exactly one external tool invocation.

    Subclasses implement ``build_step`` and declare ``outcome_map`` and
    ``default_image``.  The image can be overridden per run with the config
    key ``<stage name>_image``.
    """

    outcome_map: OutcomeMap = OutcomeMap()
    default_image: str = ""

    def image(self, config: Mapping[str, Any]) -> str:
        return config.get(f"{self.name}_image") or self.default_image

    @abstractmethod
    def build_step(
        self, ctx: RunContext, artifacts: Mapping[str, Any]
    ) -> StepSpec:
        ...

    def detect_findings(self, config: Mapping[str, Any], result: ExecResult) -> bool:
        """Override when ``outcome_map.findings_from_output`` is set."""
        return False

    def collect_artifacts(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        """Override to publish values for later stages."""
        return {}

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        """Extra report metadata (finding counts, digests)."""
        return {}

    def finding_message(self, result: ExecResult) -> str:
        return f"{self.display_name} reported findings (exit {result.exit_code})"

    def _execute(
        self, ctx: RunContext, artifacts: Mapping[str, Any]
    ) -> StageOutcome:
        spec = self.build_step(ctx, artifacts)
        result = ctx.substrate.run(spec, ctx.service_endpoints, network=ctx.network)

        exit_class = self.outcome_map.classify(result.exit_code)
        if exit_class is ExitClass.EXECUTION_FAILURE:
            raise InfrastructureError(
                f"{self.display_name} could not run "
                f"(exit {result.exit_code}): {result.stderr.strip()[-_STDERR_TAIL:]}",
                stage_name=self.name,
                exit_code=result.exit_code,
                output=result.combined_output,
            )
        if (
            exit_class is ExitClass.OK
            and self.outcome_map.findings_from_output
            and self.detect_findings(ctx.config, result)
        ):
            exit_class = ExitClass.FINDING

        metadata = {
            "exit_code": result.exit_code,
            "exit_class": exit_class.value,
            "step": spec.describe(),
        }
        metadata.update(self.result_metadata(ctx, artifacts, result))
        produced = self.collect_artifacts(ctx, artifacts, result)

        error = None
        if exit_class is ExitClass.FINDING:
            error = StageExecutionError(
                self.finding_message(result),
                stage_name=self.name,
                exit_code=result.exit_code,
            )
        return StageOutcome(
            output=result.combined_output,
            error=error,
            artifacts=produced,
            metadata=metadata,
        )
