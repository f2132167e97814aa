"""
Pipeline Schemas - Typed models for the documents a run persists.

When report export is requested, the exporter writes these documents in
stage-execution order:

    FindingsDocument          - one per dispatched stage, raw + parsed output
    DependencyManifest        - the SBOM produced by the sbom stage
    SignedArtifactReference   - the signed image produced by the sign stage
    ReportDocument            - the full run report envelope

All models validate on construction so a malformed document never reaches
disk.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

_STAGE_STATUSES = {"success", "warning", "failed", "skipped"}
_POLICIES = {"hard", "soft", "informational"}
_OVERALL_STATUSES = {"completed", "aborted"}
_SBOM_FORMATS = {"cyclonedx-json", "spdx-json", "syft-json"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_tool_output(text: str) -> Optional[Any]:
    """Decode JSON or JSON-lines tool output.  Returns ``None`` for text."""
    stripped = text.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except ValueError:
        pass

    records = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            records.append(json.loads(line))
        except ValueError:
            return None
    return records or None


# ---------------------------------------------------------------------------
# Per-stage findings
# ---------------------------------------------------------------------------


class FindingsDocument(BaseModel):
    """Machine-readable record of one dispatched stage.

    ``raw_output`` is the stage output verbatim; ``parsed`` is its JSON
    decoding when the tool emitted JSON (SARIF, Trivy JSON, JSONL).
    """

    schema_version: str = "1"
    run_id: str
    sequence: int = Field(ge=1)
    stage_name: str
    status: str
    policy: str
    exit_code: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: str = ""
    duration_seconds: float = Field(default=0.0, ge=0.0)
    raw_output: str = ""
    parsed: Optional[Any] = None

    model_config = {"extra": "allow"}

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in _STAGE_STATUSES:
            raise ValueError(f"status must be one of {_STAGE_STATUSES}, got '{v}'")
        return v

    @field_validator("policy")
    @classmethod
    def validate_policy(cls, v: str) -> str:
        if v not in _POLICIES:
            raise ValueError(f"policy must be one of {_POLICIES}, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Supply-chain documents
# ---------------------------------------------------------------------------


class DependencyManifest(BaseModel):
    """SBOM of the built source tree (from the sbom stage)."""

    run_id: str
    source_stage: str
    format: str = "cyclonedx-json"
    component_count: int = Field(default=0, ge=0)
    document: Dict[str, Any] = Field(default_factory=dict)
    generated_at: str = Field(default_factory=_now)

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in _SBOM_FORMATS:
            raise ValueError(f"format must be one of {_SBOM_FORMATS}, got '{v}'")
        return v

    @classmethod
    def from_sbom_text(
        cls, run_id: str, source_stage: str, text: str, format: str = "cyclonedx-json"
    ) -> "DependencyManifest":
        parsed = parse_tool_output(text)
        document = parsed if isinstance(parsed, dict) else {}
        components = document.get("components") or document.get("packages") or []
        return cls(
            run_id=run_id,
            source_stage=source_stage,
            format=format,
            component_count=len(components) if isinstance(components, list) else 0,
            document=document,
        )


class SignedArtifactReference(BaseModel):
    """Reference to the deployable image and its signature."""

    run_id: str
    image_ref: str
    signed_by_stage: str
    digest: Optional[str] = None
    signature_ref: Optional[str] = None
    transparency_log: bool = False
    signed_at: str = Field(default_factory=_now)

    @field_validator("image_ref")
    @classmethod
    def validate_image_ref(cls, v: str) -> str:
        if not v or " " in v:
            raise ValueError(f"image_ref must be a non-empty image reference, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Report envelope
# ---------------------------------------------------------------------------


class HardFailureEntry(BaseModel):
    stage_name: str
    error: str
    error_kind: str


class StageEntry(BaseModel):
    stage_name: str
    status: str
    policy: str
    output: str = ""
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_seconds: float = 0.0
    started_at: str = ""
    artifacts: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        if v not in _STAGE_STATUSES:
            raise ValueError(f"status must be one of {_STAGE_STATUSES}, got '{v}'")
        return v


class ReportDocument(BaseModel):
    """Top-level envelope for a finalized run report."""

    run_id: str
    overall_status: str
    has_warnings: bool = False
    first_hard_failure: Optional[HardFailureEntry] = None
    stages: List[StageEntry] = Field(default_factory=list)
    generated_at: str = Field(default_factory=_now)

    @field_validator("overall_status")
    @classmethod
    def validate_overall_status(cls, v: str) -> str:
        if v not in _OVERALL_STATUSES:
            raise ValueError(
                f"overall_status must be one of {_OVERALL_STATUSES}, got '{v}'"
            )
        return v

    def stages_by_status(self) -> Dict[str, int]:
        """Return a dict counting stages per status."""
        counts: Dict[str, int] = {}
        for stage in self.stages:
            counts[stage.status] = counts.get(stage.status, 0) + 1
        return counts
