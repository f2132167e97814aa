"""
Run Report - Append-only record of one pipeline run.

``ReportAggregator`` is written to only by the orchestrator.  Entries are
appended in dispatch order and never retracted; the overall status is unset
until ``finalize`` is called exactly once.  ``snapshot()`` returns an
immutable ``Report`` at any point, so a partial report is always available,
including after an abort.

``ReportExporter`` persists a finalized report together with the per-stage
findings documents and the supply-chain documents (dependency manifest and
signed artifact reference).
"""

from __future__ import annotations

import contextlib
import enum
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from ..schemas.pipeline import (
    DependencyManifest,
    FindingsDocument,
    HardFailureEntry,
    ReportDocument,
    SignedArtifactReference,
    StageEntry,
    parse_tool_output,
)
from .protocol import StageResult, StageStatus

logger = logging.getLogger(__name__)


class OverallStatus(str, enum.Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class HardFailure:
    """Reference to the stage that aborted the run."""

    stage_name: str
    error: str
    error_kind: str


@dataclass(frozen=True)
class Report:
    """Immutable view of the run report.

    ``overall_status`` is ``None`` until the aggregator is finalized.
    """

    run_id: str
    entries: Tuple[StageResult, ...] = ()
    overall_status: Optional[OverallStatus] = None
    first_hard_failure: Optional[HardFailure] = None

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def finalized(self) -> bool:
        return self.overall_status is not None

    @property
    def has_warnings(self) -> bool:
        return any(e.status is StageStatus.WARNING for e in self.entries)

    @property
    def completed(self) -> bool:
        return self.overall_status is OverallStatus.COMPLETED

    def entry(self, stage_name: str) -> Optional[StageResult]:
        for result in self.entries:
            if result.stage_name == stage_name:
                return result
        return None

    def statuses(self) -> Dict[str, StageStatus]:
        return {e.stage_name: e.status for e in self.entries}

    def to_document(self) -> ReportDocument:
        failure = None
        if self.first_hard_failure is not None:
            failure = HardFailureEntry(
                stage_name=self.first_hard_failure.stage_name,
                error=self.first_hard_failure.error,
                error_kind=self.first_hard_failure.error_kind,
            )
        if self.overall_status is None:
            raise ValueError("Report is not finalized")
        return ReportDocument(
            run_id=self.run_id,
            overall_status=self.overall_status.value,
            has_warnings=self.has_warnings,
            first_hard_failure=failure,
            stages=[StageEntry(**e.to_dict()) for e in self.entries],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "overall_status": self.overall_status.value if self.overall_status else None,
            "has_warnings": self.has_warnings,
            "first_hard_failure": (
                {
                    "stage_name": self.first_hard_failure.stage_name,
                    "error": self.first_hard_failure.error,
                    "error_kind": self.first_hard_failure.error_kind,
                }
                if self.first_hard_failure
                else None
            ),
            "stages": [e.to_dict() for e in self.entries],
        }

    def render_markdown(self) -> str:
        """Human-readable summary table."""
        status = self.overall_status.value.upper() if self.overall_status else "IN PROGRESS"
        lines = [
            "# Shipgate Pipeline Report",
            "",
            f"**Run:** `{self.run_id}`  ",
            f"**Status:** {status}",
        ]
        if self.has_warnings:
            lines.append("")
            lines.append("> Completed with warnings from soft-gated stages.")
        if self.first_hard_failure is not None:
            lines.append("")
            lines.append(
                f"> Aborted at `{self.first_hard_failure.stage_name}` "
                f"({self.first_hard_failure.error_kind}): "
                f"{self.first_hard_failure.error}"
            )
        lines.extend([
            "",
            "| # | Stage | Policy | Status | Duration | Error |",
            "|---|-------|--------|--------|----------|-------|",
        ])
        for index, e in enumerate(self.entries, 1):
            error = (e.error or "").replace("|", "\\|").replace("\n", " ")
            if len(error) > 120:
                error = error[:117] + "..."
            lines.append(
                f"| {index} | {e.stage_name} | {e.policy.value} | {e.status.value} "
                f"| {e.duration_seconds:.1f}s | {error} |"
            )
        lines.append("")
        return "\n".join(lines)


class ReportAggregator:
    """Append-only builder for the run report."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self._entries: List[StageResult] = []
        self._overall_status: Optional[OverallStatus] = None
        self._first_failure: Optional[HardFailure] = None

    @property
    def entries(self) -> Tuple[StageResult, ...]:
        return tuple(self._entries)

    @property
    def finalized(self) -> bool:
        return self._overall_status is not None

    def append(self, result: StageResult) -> None:
        if self.finalized:
            raise RuntimeError(
                f"Cannot append '{result.stage_name}': report already finalized"
            )
        if any(e.stage_name == result.stage_name for e in self._entries):
            raise ValueError(f"Stage '{result.stage_name}' already reported")
        self._entries.append(result)

    def finalize(
        self,
        status: OverallStatus,
        first_failure: Optional[HardFailure] = None,
    ) -> Report:
        if self.finalized:
            raise RuntimeError("Report already finalized")
        if status is OverallStatus.ABORTED and first_failure is None:
            raise ValueError("An aborted report needs its first hard failure")
        self._overall_status = status
        self._first_failure = first_failure
        return self.snapshot()

    def snapshot(self) -> Report:
        return Report(
            run_id=self.run_id,
            entries=tuple(self._entries),
            overall_status=self._overall_status,
            first_hard_failure=self._first_failure,
        )


# ============================================================================
# Export
# ============================================================================


def _atomic_write(path: Path, text: str) -> None:
    """Write via temp file + rename so readers never see partial files."""
    temp_path = path.with_name(path.name + ".tmp")
    try:
        with open(temp_path, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(temp_path, path)
    except Exception:
        with contextlib.suppress(OSError):
            os.unlink(temp_path)
        raise


def _dump(model: BaseModel) -> str:
    return json.dumps(model.model_dump(mode="json"), indent=2, default=str)


class ReportExporter:
    """Write a finalized report and its documents to ``output_dir``.

    Documents follow stage-execution order: each dispatched stage's
    findings document, immediately followed by the dependency manifest or
    signed artifact reference when that stage produced one, then
    ``report.json`` and ``report.md``.
    """

    SBOM_ARTIFACT = "sbom"
    SIGNED_ARTIFACT = "signed_ref"

    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)

    def export(
        self, report: Report, artifacts: Optional[Mapping[str, Any]] = None
    ) -> List[Path]:
        if not report.finalized:
            raise ValueError("Only a finalized report can be exported")
        artifacts = artifacts or {}
        self.output_dir.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []

        dispatched = [e for e in report.entries if e.status is not StageStatus.SKIPPED]
        for sequence, entry in enumerate(dispatched, 1):
            document = FindingsDocument(
                run_id=report.run_id,
                sequence=sequence,
                stage_name=entry.stage_name,
                status=entry.status.value,
                policy=entry.policy.value,
                exit_code=entry.metadata.get("exit_code"),
                error=entry.error,
                error_kind=entry.error_kind.value if entry.error_kind else None,
                started_at=entry.started_at,
                duration_seconds=entry.duration_seconds,
                raw_output=entry.output,
                parsed=parse_tool_output(entry.output),
            )
            written.append(
                self._write(f"{sequence:02d}-{entry.stage_name}.findings.json", _dump(document))
            )

            if self.SBOM_ARTIFACT in entry.artifacts and self.SBOM_ARTIFACT in artifacts:
                manifest = DependencyManifest.from_sbom_text(
                    report.run_id, entry.stage_name, str(artifacts[self.SBOM_ARTIFACT])
                )
                written.append(self._write("dependency-manifest.json", _dump(manifest)))

            if self.SIGNED_ARTIFACT in entry.artifacts and self.SIGNED_ARTIFACT in artifacts:
                image_ref = str(artifacts[self.SIGNED_ARTIFACT])
                digest = image_ref.split("@", 1)[1] if "@" in image_ref else None
                reference = SignedArtifactReference(
                    run_id=report.run_id,
                    image_ref=image_ref,
                    digest=digest,
                    signed_by_stage=entry.stage_name,
                    signature_ref=entry.metadata.get("signature_ref"),
                    transparency_log=bool(entry.metadata.get("transparency_log", False)),
                )
                written.append(self._write("signed-artifact.json", _dump(reference)))

        written.append(self._write("report.json", _dump(report.to_document())))
        written.append(self._write("report.md", report.render_markdown()))
        logger.info("Exported %d report documents to %s", len(written), self.output_dir)
        return written

    def _write(self, name: str, text: str) -> Path:
        path = self.output_dir / name
        _atomic_write(path, text)
        return path
