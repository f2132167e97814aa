"""Gate enforcement for the shipgate pipeline.

Classifies a stage's outcome against its enforcement policy and decides
whether the run continues.

Usage::

    from shipgate.pipeline.gate import GateEnforcer

    gate = GateEnforcer()
    decision = gate.evaluate(stage.name, policy, outcome=outcome)
    if not decision.should_proceed:
        ...  # abort the run
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..exceptions import InfrastructureError, ServiceUnavailable
from .protocol import ErrorKind, GatePolicy, StageOutcome, StageStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Result of gating one stage.

    Attributes
    ----------
    status : StageStatus
        Status to record for the stage.
    should_proceed : bool
        Whether the pipeline continues to the next stage.
    reason : str
        Human-readable explanation of the decision.
    error_kind : ErrorKind | None
        Classification of the error, if any.
    error : str | None
        Error text recorded in the report.
    """

    status: StageStatus
    should_proceed: bool
    reason: str
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None


class GateEnforcer:
    """Translate a raw stage outcome into a continuation decision.

    Dispatch failures (``InfrastructureError``, ``ServiceUnavailable``,
    crashes) always abort regardless of policy.  A returned
    ``StageExecutionError`` is gated exactly by the stage's policy:

    ==============  =========  ========
    policy          status     proceed
    ==============  =========  ========
    hard            failed     no
    soft            warning    yes
    informational   success    yes
    ==============  =========  ========
    """

    def evaluate(
        self,
        stage_name: str,
        policy: GatePolicy,
        outcome: Optional[StageOutcome] = None,
        exc: Optional[BaseException] = None,
    ) -> GateDecision:
        """Gate a stage given either its outcome or its dispatch failure.

        Parameters
        ----------
        stage_name : str
            Stage being gated (for logs and reasons).
        policy : GatePolicy
            The effective policy of the stage for this run.
        outcome : StageOutcome | None
            What ``execute`` returned.  Ignored when ``exc`` is set.
        exc : BaseException | None
            Exception raised while dispatching the stage.

        Returns
        -------
        GateDecision
        """
        if exc is not None:
            return self._dispatch_failure(stage_name, exc)

        if outcome is None:
            raise ValueError("evaluate() needs an outcome or an exception")

        if outcome.error is None:
            logger.info("Gate: %s passed", stage_name)
            return GateDecision(
                status=StageStatus.SUCCESS,
                should_proceed=True,
                reason=f"Stage '{stage_name}' succeeded",
            )

        error_text = str(outcome.error)
        if policy is GatePolicy.HARD:
            logger.error("Gate BLOCKED: %s failed: %s", stage_name, error_text)
            return GateDecision(
                status=StageStatus.FAILED,
                should_proceed=False,
                reason=f"Hard gate '{stage_name}' failed",
                error_kind=ErrorKind.STAGE_EXECUTION,
                error=error_text,
            )
        if policy is GatePolicy.SOFT:
            logger.warning("Gate: %s failed (soft, continuing): %s", stage_name, error_text)
            return GateDecision(
                status=StageStatus.WARNING,
                should_proceed=True,
                reason=f"Soft gate '{stage_name}' failed; continuing",
                error_kind=ErrorKind.STAGE_EXECUTION,
                error=error_text,
            )

        logger.info("Gate: %s reported (informational): %s", stage_name, error_text)
        return GateDecision(
            status=StageStatus.SUCCESS,
            should_proceed=True,
            reason=f"Informational stage '{stage_name}' recorded an error",
            error_kind=ErrorKind.STAGE_EXECUTION,
            error=error_text,
        )

    def _dispatch_failure(self, stage_name: str, exc: BaseException) -> GateDecision:
        if isinstance(exc, ServiceUnavailable):
            kind = ErrorKind.SERVICE_UNAVAILABLE
        else:
            kind = ErrorKind.INFRASTRUCTURE

        if isinstance(exc, InfrastructureError):
            error_text = str(exc)
        else:
            error_text = f"{type(exc).__name__}: {exc}"

        logger.error("Gate BLOCKED: %s could not run (%s): %s", stage_name, kind.value, error_text)
        return GateDecision(
            status=StageStatus.FAILED,
            should_proceed=False,
            reason=f"Stage '{stage_name}' could not run ({kind.value})",
            error_kind=kind,
            error=error_text,
        )
