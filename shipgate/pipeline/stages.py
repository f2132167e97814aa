"""
Concrete pipeline stages for source-level checks.

Each class wraps exactly one tool invocation and declares how that tool's
exit codes map to findings.  Stage order follows the canonical pipeline:

    Phase 1   secret_scan       TruffleHog              hard
    Phase 2   sast              Semgrep                 hard
    Phase 3   analyzer_scan     .NET analyzers          hard
    Phase 4   build             compile + tests         hard
    Phase 5   code_coverage     coverage threshold      soft
    Phase 6   code_quality      format check            soft
    Phase 7   dependency_scan   Trivy fs                hard
    Phase 8   license_scan      Trivy license           hard
    Phase 9   iac_scan          Checkov                 informational
    Phase 10  policy_check      Conftest                soft
    Phase 11  sbom              Syft                    soft
    Phase 24  mutation_test     Stryker.NET             soft

Delivery stages (phases 12-23 and 25) live in ``delivery_stages``.
``build_default_stages`` assembles the full catalog.
"""

from __future__ import annotations

import logging
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional

from .base_stage import ToolStage, severities_at_or_above
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
from .protocol import GatePolicy, OutcomeMap, RunContext
from .step_spec import StepSpec, StepSpecBuilder
from .substrate import ExecResult

logger = logging.getLogger(__name__)

_SEMGREP_SEVERITY = {
    "low": ("INFO", "WARNING", "ERROR"),
    "medium": ("WARNING", "ERROR"),
    "high": ("ERROR",),
    "critical": ("ERROR",),
}


def _csv(value: Any) -> List[str]:
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if str(v).strip()]
    return [v.strip() for v in str(value or "").split(",") if v.strip()]


# ============================================================================
# Phase 1: Secret scan
# ============================================================================


class SecretScanStage(ToolStage):
    """Scan the source tree for credentials with TruffleHog.

    ``--fail`` makes TruffleHog exit 183 when it finds secrets.
    """

    name = "secret_scan"
    display_name = "Phase 1: Secret Scan"
    phase_number = 1.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(finding_codes=frozenset({183}))
    default_image = "trufflesecurity/trufflehog:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_source(ctx.target_path)
            .with_args("filesystem", "/src", "--json", "--no-update", "--fail")
            .build()
        )


# ============================================================================
# Phase 2: SAST
# ============================================================================


class SastStage(ToolStage):
    """Static analysis with Semgrep.  ``--error`` exits 1 on findings."""

    name = "sast"
    display_name = "Phase 2: Static Application Security Testing"
    phase_number = 2.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(finding_codes=frozenset({1}))
    default_image = "returntocorp/semgrep:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        builder = StepSpecBuilder(self.image(ctx.config)).with_source(ctx.target_path)
        builder.with_args("semgrep", "scan")
        for ruleset in _csv(ctx.config.get("semgrep_configs")) or ["auto"]:
            builder.with_args(f"--config={ruleset}")
        threshold = str(ctx.config.get("severity_threshold", "high")).lower()
        for severity in _SEMGREP_SEVERITY.get(threshold, ("INFO", "WARNING", "ERROR")):
            builder.with_args(f"--severity={severity}")
        return builder.with_args("--sarif", "--error", "--metrics=off", ".").build()


# ============================================================================
# Phases 3-6: Commands in the build image
# ============================================================================


class _SdkShellStage(ToolStage):
    """Run a configured shell command in the build image over a writable tree."""

    outcome_map = OutcomeMap(any_nonzero_is_finding=True)
    default_image = "mcr.microsoft.com/dotnet/sdk:8.0"
    command_key = ""

    def image(self, config: Mapping[str, Any]) -> str:
        return config.get(f"{self.name}_image") or config.get("build_image") or self.default_image

    def command(self, config: Mapping[str, Any]) -> str:
        return str(config.get(self.command_key) or "")

    def config_issues(self, config, secrets) -> List[str]:
        if not self.command(config).strip():
            return [f"{self.command_key} is empty"]
        return []

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_source(ctx.target_path, read_only=False)
            .with_entrypoint("sh")
            .with_args("-c", self.command(ctx.config))
            .build()
        )


class AnalyzerScanStage(_SdkShellStage):
    """Build with every .NET analyzer enabled and warnings treated as errors."""

    name = "analyzer_scan"
    display_name = "Phase 3: C# Security Analysis"
    phase_number = 3.0
    policy = GatePolicy.HARD
    command_key = "analyzer_command"

    def finding_message(self, result: ExecResult) -> str:
        return f"Analyzers reported warnings or errors (exit {result.exit_code})"


class BuildStage(_SdkShellStage):
    """Compile the project and run its unit tests.

    Any non-zero exit is a failed build or a failed test.
    """

    name = "build"
    display_name = "Phase 4: Build & Unit Tests"
    phase_number = 4.0
    policy = GatePolicy.HARD
    command_key = "build_command"

    def finding_message(self, result: ExecResult) -> str:
        return f"Build or unit tests failed (exit {result.exit_code})"


_COVERAGE_TAG_RE = re.compile(r"<coverage\b([^>]*)>")
_XML_ATTR_RE = re.compile(r'([\w-]+)="([^"]*)"')


def coverage_percent(report: str) -> Optional[float]:
    """Line coverage in percent across one or more Cobertura documents.

    Totals are summed when the roots carry ``lines-covered``/``lines-valid``;
    otherwise the ``line-rate`` values are averaged.  ``None`` when the
    text holds no coverage root.
    """
    covered = valid = 0
    rates: List[float] = []
    for match in _COVERAGE_TAG_RE.finditer(report):
        attrs = dict(_XML_ATTR_RE.findall(match.group(1)))
        try:
            if "lines-valid" in attrs and "lines-covered" in attrs:
                valid += int(attrs["lines-valid"])
                covered += int(attrs["lines-covered"])
            elif "line-rate" in attrs:
                rates.append(float(attrs["line-rate"]))
        except ValueError:
            continue
    if valid:
        return round(100.0 * covered / valid, 2)
    if rates:
        return round(100.0 * sum(rates) / len(rates), 2)
    return None


class CodeCoverageStage(_SdkShellStage):
    """Run the tests with coverage collection and enforce a minimum.

    ``coverage_command`` prints the Cobertura report(s) on stdout.  A
    failed test run, a missing report and coverage under
    ``coverage_threshold`` are all findings.
    """

    name = "code_coverage"
    display_name = "Phase 5: Code Coverage"
    phase_number = 5.0
    policy = GatePolicy.SOFT
    outcome_map = OutcomeMap(any_nonzero_is_finding=True, findings_from_output=True)
    command_key = "coverage_command"

    @staticmethod
    def threshold(config: Mapping[str, Any]) -> float:
        return float(config.get("coverage_threshold", 80))

    def detect_findings(self, config: Mapping[str, Any], result: ExecResult) -> bool:
        percent = coverage_percent(result.stdout)
        return percent is None or percent < self.threshold(config)

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        return {
            "coverage_percent": coverage_percent(result.stdout),
            "coverage_threshold": self.threshold(ctx.config),
        }

    def finding_message(self, result: ExecResult) -> str:
        if result.exit_code != 0:
            return f"Tests failed while collecting coverage (exit {result.exit_code})"
        percent = coverage_percent(result.stdout)
        if percent is None:
            return "No Cobertura coverage report was produced"
        return f"Line coverage {percent}% is below the required minimum"


class CodeQualityStage(_SdkShellStage):
    """Verify formatting; a diff is a soft failure."""

    name = "code_quality"
    display_name = "Phase 6: Code Quality"
    phase_number = 6.0
    policy = GatePolicy.SOFT
    command_key = "format_command"

    def command(self, config: Mapping[str, Any]) -> str:
        return str(config.get(self.command_key) or "true")

    def finding_message(self, result: ExecResult) -> str:
        return "Formatting check reported changes"


# ============================================================================
# Phases 7-8: Trivy filesystem scans
# ============================================================================


class _TrivyFsStage(ToolStage):
    outcome_map = OutcomeMap(finding_codes=frozenset({1}))
    default_image = "aquasec/trivy:latest"
    scanners = "vuln"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        severities = severities_at_or_above(ctx.config.get("severity_threshold", "high"))
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_source(ctx.target_path)
            .with_args(
                "fs",
                "--scanners", self.scanners,
                "--severity", ",".join(severities),
                "--format", "json",
                "--exit-code", "1",
                ".",
            )
            .build()
        )


class DependencyScanStage(_TrivyFsStage):
    """Known-vulnerable dependencies (Trivy ``vuln`` scanner)."""

    name = "dependency_scan"
    display_name = "Phase 7: Dependency Scan"
    phase_number = 7.0
    policy = GatePolicy.HARD
    scanners = "vuln"


class LicenseScanStage(_TrivyFsStage):
    """Disallowed licenses (Trivy ``license`` scanner)."""

    name = "license_scan"
    display_name = "Phase 8: License Compliance"
    phase_number = 8.0
    policy = GatePolicy.HARD
    scanners = "license"


# ============================================================================
# Phase 9: IaC scan
# ============================================================================


class IacScanStage(ToolStage):
    """Infrastructure-as-code misconfigurations with Checkov.

    Informational by default: failed checks are recorded, never block.
    """

    name = "iac_scan"
    display_name = "Phase 9: Infrastructure-as-Code Scan"
    phase_number = 9.0
    policy = GatePolicy.INFORMATIONAL
    outcome_map = OutcomeMap(finding_codes=frozenset({1}))
    default_image = "bridgecrew/checkov:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_source(ctx.target_path)
            .with_args(
                "-d", str(ctx.config.get("iac_directory") or "."),
                "--output", "json",
                "--compact", "--quiet",
            )
            .build()
        )


# ============================================================================
# Phase 10: Policy check
# ============================================================================


class PolicyCheckStage(ToolStage):
    """Rego policies over deployment manifests with Conftest."""

    name = "policy_check"
    display_name = "Phase 10: Policy Check"
    phase_number = 10.0
    policy = GatePolicy.SOFT
    outcome_map = OutcomeMap(finding_codes=frozenset({1}))
    default_image = "openpolicyagent/conftest:latest"

    def config_issues(self, config, secrets) -> List[str]:
        if not _csv(config.get("policy_inputs")):
            return ["policy_inputs is empty"]
        return []

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        policy_dir = str(ctx.config.get("policy_dir") or "policy")
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_source(ctx.target_path)
            .with_args("test", *_csv(ctx.config.get("policy_inputs")))
            .with_args("--policy", policy_dir, "--output", "json")
            .build()
        )


# ============================================================================
# Phase 11: SBOM
# ============================================================================


class SbomStage(ToolStage):
    """Generate a CycloneDX SBOM of the source tree with Syft.

    The SBOM document (stdout) becomes the ``sbom`` artifact.
    """

    name = "sbom"
    display_name = "Phase 11: Software Bill of Materials"
    phase_number = 11.0
    policy = GatePolicy.SOFT
    produced_artifacts = ("sbom",)
    default_image = "anchore/syft:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_source(ctx.target_path)
            .with_args("scan", "dir:.", "-o", "cyclonedx-json", "-q")
            .build()
        )

    def collect_artifacts(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        if not result.stdout.strip():
            return {}
        return {"sbom": result.stdout}


# ============================================================================
# Phase 24: Mutation testing
# ============================================================================


_MUTATION_SCORE_RE = re.compile(r"final mutation score is\s+([0-9.]+)\s*%", re.IGNORECASE)


class MutationTestStage(_SdkShellStage):
    """Mutation testing with Stryker.NET.

    Stryker exits non-zero when the score falls under ``--threshold-break``,
    which is set ten points below ``mutation_threshold``.
    """

    name = "mutation_test"
    display_name = "Phase 24: Mutation Testing"
    phase_number = 24.0
    policy = GatePolicy.SOFT

    def command(self, config: Mapping[str, Any]) -> str:
        high = int(config.get("mutation_threshold", 80))
        low = max(high - 10, 0)
        project = shlex.quote(str(config.get("mutation_project") or "."))
        return (
            'export PATH="$PATH:$HOME/.dotnet/tools" '
            "&& dotnet tool update -g dotnet-stryker "
            f"&& cd {project} "
            f"&& dotnet stryker --threshold-high {high} "
            f"--threshold-low {low} --threshold-break {low}"
        )

    @staticmethod
    def mutation_score(output: str) -> Optional[float]:
        match = _MUTATION_SCORE_RE.search(output)
        return float(match.group(1)) if match else None

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        return {"mutation_score": self.mutation_score(result.stdout)}

    def finding_message(self, result: ExecResult) -> str:
        score = self.mutation_score(result.stdout)
        if score is None:
            return f"Mutation testing failed (exit {result.exit_code})"
        return f"Mutation score {score}% is below the break threshold"


# ============================================================================
# Factory
# ============================================================================


STAGE_CLASSES = (
    SecretScanStage,
    SastStage,
    AnalyzerScanStage,
    BuildStage,
    CodeCoverageStage,
    CodeQualityStage,
    DependencyScanStage,
    LicenseScanStage,
    IacScanStage,
    PolicyCheckStage,
    SbomStage,
    PackageStage,
    ImageSizeStage,
    ContainerScanStage,
    CisBenchmarkStage,
    PublishStage,
    SignStage,
    AttestSbomStage,
    DeployStage,
    IntegrationTestStage,
    DastStage,
    ApiSecurityStage,
    PerformanceStage,
    MutationTestStage,
    ReleasePushStage,
)

STAGE_NAMES = tuple(cls.name for cls in STAGE_CLASSES)


def build_default_stages(config: Optional[Dict[str, Any]] = None) -> List[ToolStage]:
    """Create the canonical stage catalog.

    Selection and policy overrides are applied by the orchestrator from
    ``config["stages"]`` and ``config["gate_policies"]``; the catalog itself
    is always complete.

    Parameters
    ----------
    config : dict | None
        Unused by the built-in stages; accepted so that callers can pass
        the unified config uniformly.

    Returns
    -------
    list[ToolStage]
        One instance per stage, in phase order.
    """
    stages = [cls() for cls in STAGE_CLASSES]
    logger.debug("Built %d default stages", len(stages))
    return stages
