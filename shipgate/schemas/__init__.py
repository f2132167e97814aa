"""
Pydantic schemas for shipgate run documents

Schemas enforce data consistency for everything a run persists: per-stage
findings documents, the dependency manifest, the signed artifact reference
and the report envelope.
"""

from .pipeline import (
    DependencyManifest,
    FindingsDocument,
    HardFailureEntry,
    ReportDocument,
    SignedArtifactReference,
    StageEntry,
    parse_tool_output,
)

__all__ = [
    "FindingsDocument",
    "DependencyManifest",
    "SignedArtifactReference",
    "HardFailureEntry",
    "StageEntry",
    "ReportDocument",
    "parse_tool_output",
]
