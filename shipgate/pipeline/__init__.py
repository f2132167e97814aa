"""
Pipeline components for shipgate.

Key components:
- ``PipelineStage`` -- Protocol every stage implements
- ``RunContext`` -- Per-run state shared by reference with every stage
- ``StageResult`` -- Immutable report entry for each stage
- ``GateEnforcer`` -- Classifies outcomes by hard/soft/informational policy
- ``ServiceProvisioner`` -- Ephemeral registry, cluster and data store
- ``ReportAggregator`` -- Append-only run report
- ``PipelineOrchestrator`` -- Resolves and runs stages in order
- ``BaseStage`` / ``ToolStage`` -- Convenience ABCs for implementing stages
- ``build_default_stages`` -- Factory for the canonical 25-stage catalog
"""

from .protocol import (
    ErrorKind,
    ExitClass,
    GatePolicy,
    OutcomeMap,
    PipelineStage,
    RunContext,
    ServiceKind,
    StageOutcome,
    StageResult,
    StageStatus,
)
from .step_spec import Mount, StepSpec, StepSpecBuilder
from .substrate import DockerSubstrate, ExecResult, ExecutionSubstrate
from .gate import GateDecision, GateEnforcer
from .services import (
    DockerServiceBackend,
    ReadinessState,
    ServiceDefinition,
    ServiceHandle,
    ServiceProvisioner,
    default_definitions,
)
from .report import (
    HardFailure,
    OverallStatus,
    Report,
    ReportAggregator,
    ReportExporter,
)
from .orchestrator import PipelineOrchestrator, PipelineRun, PlannedStage, RunState
from .base_stage import BaseStage, ToolStage
from .stages import (
    STAGE_CLASSES,
    STAGE_NAMES,
    AnalyzerScanStage,
    BuildStage,
    CodeCoverageStage,
    CodeQualityStage,
    DependencyScanStage,
    IacScanStage,
    LicenseScanStage,
    MutationTestStage,
    PolicyCheckStage,
    SastStage,
    SbomStage,
    SecretScanStage,
    build_default_stages,
)
from .delivery_stages import (
    ApiSecurityStage,
    AttestSbomStage,
    CisBenchmarkStage,
    ContainerScanStage,
    DastStage,
    DeployStage,
    ImageSizeStage,
    IntegrationTestStage,
    PackageStage,
    PerformanceStage,
    PublishStage,
    ReleasePushStage,
    SignStage,
)

__all__ = [
    # Core protocol
    "PipelineStage",
    "RunContext",
    "StageOutcome",
    "StageResult",
    "StageStatus",
    "GatePolicy",
    "ErrorKind",
    "ServiceKind",
    "OutcomeMap",
    "ExitClass",
    # Execution
    "Mount",
    "StepSpec",
    "StepSpecBuilder",
    "ExecutionSubstrate",
    "DockerSubstrate",
    "ExecResult",
    # Gate
    "GateEnforcer",
    "GateDecision",
    # Services
    "ServiceProvisioner",
    "ServiceHandle",
    "ServiceDefinition",
    "ReadinessState",
    "DockerServiceBackend",
    "default_definitions",
    # Report
    "Report",
    "ReportAggregator",
    "ReportExporter",
    "OverallStatus",
    "HardFailure",
    # Orchestrator
    "PipelineOrchestrator",
    "PipelineRun",
    "PlannedStage",
    "RunState",
    # Base classes
    "BaseStage",
    "ToolStage",
    # Concrete stages
    "SecretScanStage",
    "SastStage",
    "AnalyzerScanStage",
    "BuildStage",
    "CodeCoverageStage",
    "CodeQualityStage",
    "DependencyScanStage",
    "LicenseScanStage",
    "IacScanStage",
    "PolicyCheckStage",
    "SbomStage",
    "PackageStage",
    "ImageSizeStage",
    "ContainerScanStage",
    "CisBenchmarkStage",
    "PublishStage",
    "SignStage",
    "AttestSbomStage",
    "DeployStage",
    "IntegrationTestStage",
    "DastStage",
    "ApiSecurityStage",
    "PerformanceStage",
    "MutationTestStage",
    "ReleasePushStage",
    # Factory
    "STAGE_CLASSES",
    "STAGE_NAMES",
    "build_default_stages",
]
