"""
Tests for the concrete tool stages.

Each stage is driven through ``execute`` with a fake substrate that
returns a canned ``ExecResult`` and records the ``StepSpec`` it was given.
"""

import json
from typing import List

import pytest

from shipgate.config_loader import get_default_config
from shipgate.exceptions import InfrastructureError, StageExecutionError
from shipgate.pipeline.base_stage import severities_at_or_above
from shipgate.pipeline.delivery_stages import (
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
from shipgate.pipeline.protocol import (
    GatePolicy,
    PipelineStage,
    RunContext,
    ServiceKind,
)
from shipgate.pipeline.services import ReadinessState, ServiceHandle
from shipgate.pipeline.stages import (
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
    coverage_percent,
)
from shipgate.pipeline.step_spec import StepSpec
from shipgate.pipeline.substrate import ExecResult

DIGEST = "sha256:" + "b" * 64


class RecordingSubstrate:
    def __init__(self, result: ExecResult):
        self.result = result
        self.specs: List[StepSpec] = []
        self.networks: List[str] = []

    def run(self, spec, endpoints=None, network=None):
        self.specs.append(spec)
        self.networks.append(network)
        return self.result


def _ctx(exit_code=0, stdout="", stderr="", config=None, secrets=None):
    merged = get_default_config()
    merged.update(config or {})
    substrate = RecordingSubstrate(ExecResult(exit_code=exit_code, stdout=stdout, stderr=stderr))
    return RunContext(
        run_id="r1",
        config=merged,
        target_path="/repo",
        secrets=secrets or {},
        substrate=substrate,
        network="shipgate-r1",
    )


def _bind(ctx, kind, endpoint, host_endpoint="127.0.0.1:41000", **attributes):
    ctx.bind_service(
        ServiceHandle(
            kind=kind,
            endpoint=endpoint,
            host_endpoint=host_endpoint,
            state=ReadinessState.READY,
            attributes=attributes,
        )
    )


def _spec(ctx) -> StepSpec:
    return ctx.substrate.specs[-1]


class TestCatalog:
    def test_twenty_five_unique_stages(self):
        stages = build_default_stages()
        names = [s.name for s in stages]
        assert len(stages) == 25
        assert len(set(names)) == 25
        assert tuple(names) == STAGE_NAMES

    def test_catalog_in_phase_order(self):
        phases = [s.phase_number for s in build_default_stages()]
        assert phases == sorted(phases)

    def test_all_satisfy_protocol(self):
        for stage in build_default_stages():
            assert isinstance(stage, PipelineStage), stage.name

    def test_declared_policies(self):
        policies = {s.name: s.policy for s in build_default_stages()}
        informational = {n for n, p in policies.items() if p is GatePolicy.INFORMATIONAL}
        assert informational == {"iac_scan", "image_size"}
        soft = {n for n, p in policies.items() if p is GatePolicy.SOFT}
        assert soft == {
            "code_coverage",
            "code_quality",
            "policy_check",
            "sbom",
            "cis_benchmark",
            "attest_sbom",
            "performance",
            "mutation_test",
        }
        assert policies["analyzer_scan"] is GatePolicy.HARD
        assert policies["release_push"] is GatePolicy.HARD

    def test_artifact_chain_resolves_in_order(self):
        available = set()
        for stage in build_default_stages():
            assert set(stage.required_artifacts) <= available, stage.name
            available.update(stage.produced_artifacts)
        assert available == {
            "sbom", "image", "image_ref", "signed_ref", "app_url", "release_ref",
        }

    def test_only_release_push_can_skip_itself(self):
        config = get_default_config()
        skipping = [s.name for s in build_default_stages() if s.skip_reason(config, {})]
        assert skipping == ["release_push"]


class TestSeverities:
    def test_threshold_and_above(self):
        assert severities_at_or_above("high") == ["HIGH", "CRITICAL"]
        assert severities_at_or_above("LOW") == ["LOW", "MEDIUM", "HIGH", "CRITICAL"]

    def test_unknown_threshold_means_all(self):
        assert severities_at_or_above("bogus") == ["LOW", "MEDIUM", "HIGH", "CRITICAL"]


class TestSourceStages:
    def test_secret_scan_clean(self):
        ctx = _ctx(exit_code=0, stdout="")
        outcome = SecretScanStage().execute(ctx, {})
        assert outcome.succeeded
        spec = _spec(ctx)
        assert spec.image == "trufflesecurity/trufflehog:latest"
        assert "--fail" in spec.command
        assert spec.mounts[0].source == "/repo"

    def test_secret_scan_findings(self):
        ctx = _ctx(exit_code=183, stdout='{"DetectorName": "AWS"}')
        outcome = SecretScanStage().execute(ctx, {})
        assert isinstance(outcome.error, StageExecutionError)
        assert outcome.error.exit_code == 183
        assert outcome.error.stage_name == "secret_scan"
        assert outcome.output == '{"DetectorName": "AWS"}'
        assert outcome.metadata["exit_class"] == "finding"

    def test_secret_scan_undocumented_exit_is_execution_failure(self):
        ctx = _ctx(exit_code=1, stderr="cannot read /src")
        with pytest.raises(InfrastructureError, match="cannot read"):
            SecretScanStage().execute(ctx, {})

    def test_sast_arguments(self):
        ctx = _ctx(config={"semgrep_configs": "p/owasp-top-ten", "severity_threshold": "medium"})
        SastStage().execute(ctx, {})
        command = _spec(ctx).command
        assert command[:2] == ("semgrep", "scan")
        assert "--config=p/owasp-top-ten" in command
        assert "--severity=WARNING" in command
        assert "--severity=ERROR" in command
        assert "--severity=INFO" not in command
        assert "--error" in command

    def test_sast_exit_2_is_execution_failure(self):
        with pytest.raises(InfrastructureError):
            SastStage().execute(_ctx(exit_code=2), {})

    def test_build_runs_command_with_writable_source(self):
        ctx = _ctx(config={"build_command": "make test"})
        BuildStage().execute(ctx, {})
        spec = _spec(ctx)
        assert spec.entrypoint == "sh"
        assert spec.command == ("-c", "make test")
        assert spec.mounts[0].read_only is False

    def test_build_any_nonzero_is_finding(self):
        outcome = BuildStage().execute(_ctx(exit_code=2), {})
        assert "Build or unit tests failed" in str(outcome.error)

    def test_build_requires_command(self):
        assert BuildStage().config_issues({"build_command": " "}, {}) == ["build_command is empty"]
        assert BuildStage().config_issues(get_default_config(), {}) == []

    def test_image_override(self):
        ctx = _ctx(config={"build_image": "python:3.12"})
        BuildStage().execute(ctx, {})
        assert _spec(ctx).image == "python:3.12"

    def test_code_quality_falls_back_to_build_image(self):
        ctx = _ctx(config={"build_image": "node:20"})
        CodeQualityStage().execute(ctx, {})
        assert _spec(ctx).image == "node:20"

    @pytest.mark.parametrize(
        "stage, scanner",
        [(DependencyScanStage(), "vuln"), (LicenseScanStage(), "license")],
    )
    def test_trivy_fs_scanners(self, stage, scanner):
        ctx = _ctx()
        stage.execute(ctx, {})
        command = list(_spec(ctx).command)
        assert command[0] == "fs"
        assert command[command.index("--scanners") + 1] == scanner
        assert command[command.index("--severity") + 1] == "HIGH,CRITICAL"

    def test_iac_findings(self):
        outcome = IacScanStage().execute(_ctx(exit_code=1, stdout="{}"), {})
        assert outcome.error is not None

    def test_policy_check_needs_inputs(self):
        assert PolicyCheckStage().config_issues({"policy_inputs": ""}, {}) == ["policy_inputs is empty"]

    def test_policy_check_arguments(self):
        ctx = _ctx(config={"policy_inputs": "k8s,helm", "policy_dir": "rego"})
        PolicyCheckStage().execute(ctx, {})
        assert _spec(ctx).command == ("test", "k8s", "helm", "--policy", "rego", "--output", "json")

    def test_sbom_produces_artifact(self):
        document = json.dumps({"components": []})
        outcome = SbomStage().execute(_ctx(stdout=document), {})
        assert outcome.artifacts == {"sbom": document}

    def test_sbom_empty_output_produces_nothing(self):
        assert SbomStage().execute(_ctx(stdout="  "), {}).artifacts == {}


COBERTURA = (
    '<?xml version="1.0" ?>\n'
    '<coverage line-rate="{rate}" branch-rate="0.5" lines-covered="{covered}" '
    'lines-valid="100" version="1.9" timestamp="1700000000">\n'
    "  <packages/>\n"
    "</coverage>\n"
)


class TestQualityGates:
    def test_analyzer_scan_runs_analyzer_build(self):
        ctx = _ctx()
        AnalyzerScanStage().execute(ctx, {})
        spec = _spec(ctx)
        assert spec.image == "mcr.microsoft.com/dotnet/sdk:8.0"
        assert spec.entrypoint == "sh"
        assert "/p:TreatWarningsAsErrors=true" in spec.command[-1]
        assert "/p:AnalysisMode=AllEnabledByDefault" in spec.command[-1]

    def test_analyzer_warnings_block(self):
        stage = AnalyzerScanStage()
        outcome = stage.execute(_ctx(exit_code=1, stdout="CA2100: Review SQL queries"), {})
        assert stage.policy is GatePolicy.HARD
        assert "Analyzers reported" in str(outcome.error)

    def test_analyzer_requires_command(self):
        issues = AnalyzerScanStage().config_issues({"analyzer_command": ""}, {})
        assert issues == ["analyzer_command is empty"]

    def test_coverage_percent_sums_reports(self):
        report = COBERTURA.format(rate="0.9", covered=90) + COBERTURA.format(rate="0.1", covered=10)
        assert coverage_percent(report) == 50.0

    def test_coverage_percent_falls_back_to_line_rate(self):
        assert coverage_percent('<coverage line-rate="0.734" version="1.9">') == 73.4
        assert coverage_percent("no report here") is None

    def test_coverage_above_threshold_passes(self):
        ctx = _ctx(stdout=COBERTURA.format(rate="0.85", covered=85))
        outcome = CodeCoverageStage().execute(ctx, {})
        assert outcome.succeeded
        assert outcome.metadata["coverage_percent"] == 85.0
        assert outcome.metadata["coverage_threshold"] == 80.0

    def test_coverage_below_threshold_is_finding(self):
        ctx = _ctx(stdout=COBERTURA.format(rate="0.72", covered=72))
        outcome = CodeCoverageStage().execute(ctx, {})
        assert isinstance(outcome.error, StageExecutionError)
        assert "72.0%" in str(outcome.error)
        assert outcome.metadata["exit_class"] == "finding"

    def test_coverage_threshold_from_config(self):
        ctx = _ctx(stdout=COBERTURA.format(rate="0.72", covered=72), config={"coverage_threshold": 70})
        assert CodeCoverageStage().execute(ctx, {}).succeeded

    def test_coverage_missing_report_is_finding(self):
        outcome = CodeCoverageStage().execute(_ctx(stdout=""), {})
        assert "No Cobertura coverage report" in str(outcome.error)

    def test_coverage_failed_tests_are_finding(self):
        outcome = CodeCoverageStage().execute(_ctx(exit_code=1), {})
        assert "Tests failed" in str(outcome.error)

    def test_mutation_thresholds(self):
        ctx = _ctx(config={"mutation_threshold": 75, "mutation_project": "src/Api"})
        MutationTestStage().execute(ctx, {})
        script = _spec(ctx).command[-1]
        assert "dotnet tool update -g dotnet-stryker" in script
        assert "cd src/Api" in script
        assert "--threshold-high 75 --threshold-low 65 --threshold-break 65" in script

    def test_mutation_low_threshold_never_negative(self):
        script = MutationTestStage().command({"mutation_threshold": 5})
        assert "--threshold-break 0" in script

    def test_mutation_score_reported(self):
        stdout = "[12:00:01 INF] The final mutation score is 85.71 %"
        outcome = MutationTestStage().execute(_ctx(stdout=stdout), {})
        assert outcome.succeeded
        assert outcome.metadata["mutation_score"] == 85.71

    def test_mutation_below_break_is_finding(self):
        stdout = "The final mutation score is 52.00 %"
        outcome = MutationTestStage().execute(_ctx(exit_code=1, stdout=stdout), {})
        assert "52.0%" in str(outcome.error)
        assert MutationTestStage.policy is GatePolicy.SOFT


class TestPackagingStages:
    def test_package_builds_on_host(self):
        ctx = _ctx(config={"image_name": "shop", "image_tag": "1.2"})
        outcome = PackageStage().execute(ctx, {})
        spec = _spec(ctx)
        assert spec.on_host
        assert spec.workdir == "/repo"
        assert spec.command == ("docker", "build", "-t", "shop:1.2", "-f", "Dockerfile", ".")
        assert outcome.artifacts == {"image": "shop:1.2"}

    def test_package_failure_produces_nothing(self):
        outcome = PackageStage().execute(_ctx(exit_code=1), {})
        assert outcome.artifacts == {}
        assert outcome.error is not None

    def test_container_scan_targets_image(self):
        ctx = _ctx()
        ContainerScanStage().execute(ctx, {"image": "shop:1.2"})
        spec = _spec(ctx)
        assert spec.command[0] == "image"
        assert spec.command[-1] == "shop:1.2"
        assert spec.mounts[0].target == "/var/run/docker.sock"

    def test_publish_pins_digest(self):
        ctx = _ctx(
            stdout=f"1.2: digest: {DIGEST} size: 1573",
            config={"image_name": "shop", "image_tag": "1.2"},
        )
        _bind(ctx, ServiceKind.REGISTRY, "registry:5000", host_endpoint="127.0.0.1:41000")
        outcome = PublishStage().execute(ctx, {"image": "shop:1.2"})

        script = _spec(ctx).command[-1]
        assert "docker tag shop:1.2 127.0.0.1:41000/shop:1.2" in script
        assert "docker push 127.0.0.1:41000/shop:1.2" in script
        assert outcome.artifacts == {"image_ref": f"registry:5000/shop:1.2@{DIGEST}"}
        assert outcome.metadata["digest"] == DIGEST

    def test_publish_without_digest(self):
        ctx = _ctx(stdout="pushed")
        _bind(ctx, ServiceKind.REGISTRY, "registry:5000")
        outcome = PublishStage().execute(ctx, {"image": "app:latest"})
        assert outcome.artifacts == {"image_ref": "registry:5000/app:latest"}

    def test_sign_requires_key(self):
        issues = SignStage().config_issues(get_default_config(), {})
        assert len(issues) == 1
        assert "SHIPGATE_COSIGN_KEY" in issues[0]
        assert SignStage().config_issues({}, {"cosign_key": "PEM"}) == []

    def test_sign_step_keeps_secrets_out_of_argv(self):
        secrets = {"cosign_key": "-----BEGIN KEY-----", "cosign_password": "hunter2"}
        ctx = _ctx(secrets=secrets)
        _bind(ctx, ServiceKind.REGISTRY, "registry:5000")
        ref = f"registry:5000/app:latest@{DIGEST}"
        outcome = SignStage().execute(ctx, {"image_ref": ref})

        spec = _spec(ctx)
        assert ("/cosign.key", "-----BEGIN KEY-----") in spec.files
        assert spec.secret_env == (("COSIGN_PASSWORD", "hunter2"),)
        assert "hunter2" not in " ".join(spec.command)
        assert "hunter2" not in outcome.metadata["step"]
        assert spec.command[-1] == ref
        assert "--tlog-upload=false" in spec.command
        assert outcome.artifacts == {"signed_ref": ref}
        assert outcome.metadata["signature_ref"] == f"registry:5000/app:{DIGEST.replace(':', '-')}.sig"
        assert outcome.metadata["transparency_log"] is False

    def test_image_size_runs_dive_in_ci_mode(self):
        ctx = _ctx(config={"image_min_efficiency": 0.9})
        ImageSizeStage().execute(ctx, {"image": "shop:1.2"})
        spec = _spec(ctx)
        assert spec.image == "wagoodman/dive:latest"
        assert spec.command[0] == "shop:1.2"
        assert "--ci" in spec.command
        assert "--lowestEfficiency=0.9" in spec.command
        assert ("CI", "true") in spec.env
        assert spec.mounts[0].target == "/var/run/docker.sock"

    def test_image_size_metrics(self):
        stdout = (
            "  efficiency: 98.2140 %\n"
            "  wastedBytes: 2097152 bytes (2.1 MB)\n"
            "  userWastedPercent: 1.5000 %\n"
        )
        outcome = ImageSizeStage().execute(_ctx(stdout=stdout), {"image": "shop:1.2"})
        assert outcome.metadata["efficiency_percent"] == 98.214
        assert outcome.metadata["wasted_bytes"] == 2097152
        assert outcome.metadata["user_wasted_percent"] == 1.5

    def test_image_size_failed_rules_are_informational_findings(self):
        outcome = ImageSizeStage().execute(_ctx(exit_code=1), {"image": "shop:1.2"})
        assert outcome.error is not None
        assert ImageSizeStage.policy is GatePolicy.INFORMATIONAL

    def test_cis_benchmark_arguments(self):
        ctx = _ctx()
        CisBenchmarkStage().execute(ctx, {"image": "shop:1.2"})
        command = list(_spec(ctx).command)
        assert command[0] == "image"
        assert command[command.index("--compliance") + 1] == "docker-cis-1.6.0"
        assert command[command.index("--exit-code") + 1] == "1"
        assert command[-1] == "shop:1.2"

    def test_cis_benchmark_findings_and_failures(self):
        outcome = CisBenchmarkStage().execute(_ctx(exit_code=1), {"image": "shop:1.2"})
        assert "CIS Docker Benchmark" in str(outcome.error)
        with pytest.raises(InfrastructureError):
            CisBenchmarkStage().execute(_ctx(exit_code=2), {"image": "shop:1.2"})

    def test_attest_sbom_requires_key(self):
        assert AttestSbomStage().config_issues({}, {}) != []
        assert AttestSbomStage().config_issues({}, {"cosign_key": "PEM"}) == []

    def test_attest_sbom_uses_sbom_as_predicate(self):
        secrets = {"cosign_key": "-----BEGIN KEY-----", "cosign_password": "hunter2"}
        ctx = _ctx(secrets=secrets)
        _bind(ctx, ServiceKind.REGISTRY, "registry:5000")
        ref = f"registry:5000/app:latest@{DIGEST}"
        sbom = json.dumps({"bomFormat": "CycloneDX"})
        outcome = AttestSbomStage().execute(ctx, {"image_ref": ref, "sbom": sbom})

        spec = _spec(ctx)
        command = list(spec.command)
        assert command[0] == "attest"
        assert command[command.index("--predicate") + 1] == "/sbom.json"
        assert command[command.index("--type") + 1] == "cyclonedx"
        assert command[-1] == ref
        assert ("/sbom.json", sbom) in spec.files
        assert spec.secret_env == (("COSIGN_PASSWORD", "hunter2"),)
        assert "hunter2" not in " ".join(command)
        assert outcome.metadata["attestation_ref"] == f"registry:5000/app:{DIGEST.replace(':', '-')}.att"

    def test_attest_sbom_prefers_signed_reference(self):
        ctx = _ctx(secrets={"cosign_key": "PEM"})
        _bind(ctx, ServiceKind.REGISTRY, "registry:5000")
        artifacts = {"image_ref": "registry:5000/app:1", "signed_ref": "registry:5000/app:signed", "sbom": "{}"}
        AttestSbomStage().execute(ctx, artifacts)
        assert _spec(ctx).command[-1] == "registry:5000/app:signed"


class TestDeliveryStages:
    def _cluster_ctx(self, **kwargs):
        ctx = _ctx(**kwargs)
        _bind(ctx, ServiceKind.CLUSTER, "https://k3s:6443", kubeconfig="server: https://k3s:6443")
        _bind(ctx, ServiceKind.DATA_STORE, "http://solr:8983/solr/search")
        return ctx

    def test_deploy_prefers_signed_reference(self):
        ctx = self._cluster_ctx()
        artifacts = {"image_ref": "registry:5000/app:1", "signed_ref": f"registry:5000/app:1@{DIGEST}"}
        manifest = DeployStage().render_manifest(ctx, artifacts)
        assert f"image: registry:5000/app:1@{DIGEST}" in manifest
        assert 'value: "http://solr:8983/solr/search"' in manifest
        assert "nodePort: 30080" in manifest

    def test_deploy_step_and_app_url(self):
        ctx = self._cluster_ctx()
        outcome = DeployStage().execute(ctx, {"image_ref": "registry:5000/app:1"})
        spec = _spec(ctx)
        files = dict(spec.files)
        assert files["/kube/config"] == "server: https://k3s:6443"
        assert "kind: Deployment" in files["/deploy/app.yaml"]
        assert set(spec.services) == {ServiceKind.CLUSTER, ServiceKind.DATA_STORE}
        assert "rollout status deployment/app" in spec.command[-1]
        assert outcome.artifacts == {"app_url": "http://k3s:30080"}
        assert ctx.substrate.networks[-1] == "shipgate-r1"

    def test_deploy_rollout_failure(self):
        outcome = DeployStage().execute(self._cluster_ctx(exit_code=1), {"image_ref": "r/app:1"})
        assert outcome.artifacts == {}
        assert "did not roll out" in str(outcome.error)

    def test_integration_tests_receive_app_url(self):
        ctx = self._cluster_ctx(config={"integration_test_command": "pytest -m integration"})
        IntegrationTestStage().execute(ctx, {"app_url": "http://k3s:30080"})
        spec = _spec(ctx)
        assert ("APP_URL", "http://k3s:30080") in spec.env
        assert spec.command == ("-c", "pytest -m integration")

    def test_integration_tests_need_command(self):
        issues = IntegrationTestStage().config_issues({"integration_test_command": ""}, {})
        assert issues == ["integration_test_command is empty"]

    @pytest.mark.parametrize("code", [1, 2])
    def test_dast_alerts_are_findings(self, code):
        outcome = DastStage().execute(self._cluster_ctx(exit_code=code), {"app_url": "http://k3s:30080"})
        assert outcome.error is not None

    def test_dast_exit_3_is_execution_failure(self):
        with pytest.raises(InfrastructureError):
            DastStage().execute(self._cluster_ctx(exit_code=3), {"app_url": "http://k3s:30080"})

    def test_api_security_findings_from_output(self):
        lines = "\n".join(
            json.dumps({"template-id": t, "info": {"severity": "high"}}) for t in ("a", "b")
        )
        ctx = self._cluster_ctx(stdout=lines)
        outcome = ApiSecurityStage().execute(ctx, {"app_url": "http://k3s:30080"})
        assert outcome.error is not None
        assert "2 template(s)" in str(outcome.error)
        assert outcome.metadata["finding_count"] == 2
        assert outcome.metadata["exit_class"] == "finding"
        assert "-severity" in _spec(ctx).command

    def test_api_security_clean(self):
        outcome = ApiSecurityStage().execute(self._cluster_ctx(stdout=""), {"app_url": "http://k3s:30080"})
        assert outcome.succeeded
        assert outcome.metadata["finding_count"] == 0

    def test_count_findings_ignores_noise(self):
        assert ApiSecurityStage.count_findings('not json\n{"x": 1}\n{"template-id": "t"}\n') == 1

    def test_performance_script(self):
        script = PerformanceStage().render_script(
            {"perf_vus": 5, "perf_p95_ms": 250, "health_path": "/ready"}, "http://k3s:30080/"
        )
        assert "vus: 5" in script
        assert "p(95)<250" in script
        assert "http.get('http://k3s:30080/ready')" in script

    def test_performance_thresholds_crossed(self):
        ctx = self._cluster_ctx(exit_code=99)
        outcome = PerformanceStage().execute(ctx, {"app_url": "http://k3s:30080"})
        assert outcome.error is not None
        assert dict(_spec(ctx).files)["/scripts/test.js"].startswith("import http")


class TestReleasePush:
    CONFIG = {
        "release_registry": "ghcr.io",
        "release_repository": "acme/shop",
        "image_tag": "1.2",
    }
    SECRETS = {"registry_username": "ci-bot", "registry_password": "s3cret-token"}

    def test_skipped_without_any_release_settings(self):
        stage = ReleasePushStage()
        assert stage.skip_reason(get_default_config(), {}) == "release registry credentials not provided"

    def test_partial_settings_are_config_issues(self):
        stage = ReleasePushStage()
        config = {"release_registry": "ghcr.io"}
        assert stage.skip_reason(config, {}) is None
        issues = stage.config_issues(config, {"registry_username": "ci-bot"})
        assert len(issues) == 1
        assert "release_repository" in issues[0]
        assert "registry_password" in issues[0]
        assert "registry_username" not in issues[0].split("(")[0]

    def test_credentials_alone_do_not_skip(self):
        stage = ReleasePushStage()
        assert stage.skip_reason(get_default_config(), self.SECRETS) is None
        assert stage.config_issues(get_default_config(), self.SECRETS) != []

    def test_complete_settings_have_no_issues(self):
        assert ReleasePushStage().config_issues(self.CONFIG, self.SECRETS) == []

    @pytest.mark.parametrize("repository", ["acme/shop", "ghcr.io/acme/shop"])
    def test_target_includes_registry_once(self, repository):
        config = dict(self.CONFIG, release_repository=repository)
        assert ReleasePushStage.target(config) == "ghcr.io/acme/shop:1.2"

    def test_credentials_stay_out_of_argv(self):
        ctx = _ctx(config=self.CONFIG, secrets=self.SECRETS)
        outcome = ReleasePushStage().execute(ctx, {"image": "shop:1.2"})

        spec = _spec(ctx)
        script = spec.command[-1]
        assert spec.on_host
        assert dict(spec.secret_env) == {
            "SHIPGATE_RELEASE_USERNAME": "ci-bot",
            "SHIPGATE_RELEASE_PASSWORD": "s3cret-token",
        }
        assert "s3cret-token" not in " ".join(spec.command)
        assert "ci-bot" not in " ".join(spec.command)
        assert "s3cret-token" not in outcome.metadata["step"]
        assert "login ghcr.io" in script
        assert "--password-stdin" in script
        assert "docker tag shop:1.2 ghcr.io/acme/shop:1.2" in script
        assert "docker push ghcr.io/acme/shop:1.2" in script
        assert "docker logout ghcr.io" in script

    def test_release_ref_pinned_by_digest(self):
        ctx = _ctx(
            stdout=f"1.2: digest: {DIGEST} size: 1573",
            config=self.CONFIG,
            secrets=self.SECRETS,
        )
        outcome = ReleasePushStage().execute(ctx, {"image": "shop:1.2"})
        assert outcome.artifacts == {"release_ref": f"ghcr.io/acme/shop@{DIGEST}"}
        assert outcome.metadata["registry"] == "ghcr.io"
        assert outcome.metadata["digest"] == DIGEST

    def test_push_failure_produces_nothing(self):
        ctx = _ctx(exit_code=1, config=self.CONFIG, secrets=self.SECRETS)
        outcome = ReleasePushStage().execute(ctx, {"image": "shop:1.2"})
        assert outcome.artifacts == {}
        assert "release registry failed" in str(outcome.error)
