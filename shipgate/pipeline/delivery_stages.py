"""
Concrete pipeline stages for packaging, delivery and runtime testing.

    Phase 12  package           docker build (host)     hard
    Phase 13  image_size        dive                    informational
    Phase 14  container_scan    Trivy image             hard
    Phase 15  cis_benchmark     Trivy compliance        soft
    Phase 16  publish           push to registry        hard   needs registry
    Phase 17  sign              Cosign sign             hard   needs registry
    Phase 18  attest_sbom       Cosign attest           soft   needs registry
    Phase 19  deploy            kubectl apply           hard   needs cluster, data store
    Phase 20  integration_test  test suite vs. the app  hard   needs cluster, data store
    Phase 21  dast              ZAP baseline            hard   needs cluster
    Phase 22  api_security      Nuclei                  hard   needs cluster
    Phase 23  performance       k6                      soft   needs cluster
    Phase 25  release_push      external registry push  hard   skipped without credentials

Artifacts flow ``image`` -> ``image_ref`` -> ``signed_ref`` -> ``app_url``.
``attest_sbom`` also consumes ``sbom``; ``release_push`` produces
``release_ref``.
"""

from __future__ import annotations

import json
import logging
import re
import shlex
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from .base_stage import ToolStage, severities_at_or_above
from .protocol import GatePolicy, OutcomeMap, RunContext, ServiceKind
from .step_spec import StepSpec, StepSpecBuilder
from .substrate import ExecResult

logger = logging.getLogger(__name__)

_DIGEST_RE = re.compile(r"digest:\s*(sha256:[0-9a-f]{64})")
_KUBECONFIG_PATH = "/kube/config"
_MANIFEST_PATH = "/deploy/app.yaml"


def _docker(config: Mapping[str, Any]) -> str:
    return str(config.get("docker_bin") or "docker")


def _image_tag(config: Mapping[str, Any]) -> str:
    return f"{config.get('image_name') or 'app'}:{config.get('image_tag') or 'latest'}"


def _app_name(config: Mapping[str, Any]) -> str:
    name = str(config.get("image_name") or "app").rsplit("/", 1)[-1]
    return re.sub(r"[^a-z0-9-]", "-", name.lower()).strip("-") or "app"


# ============================================================================
# Phase 12: Package
# ============================================================================


class PackageStage(ToolStage):
    """Build the deployable image on the host docker daemon."""

    name = "package"
    display_name = "Phase 12: Package Container Image"
    phase_number = 12.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(any_nonzero_is_finding=True)
    produced_artifacts = ("image",)

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder.host()
            .with_source(ctx.target_path)
            .with_args(
                _docker(ctx.config), "build",
                "-t", _image_tag(ctx.config),
                "-f", str(ctx.config.get("dockerfile") or "Dockerfile"),
                ".",
            )
            .build()
        )

    def collect_artifacts(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        if result.exit_code != 0:
            return {}
        return {"image": _image_tag(ctx.config)}

    def finding_message(self, result: ExecResult) -> str:
        return f"Image build failed (exit {result.exit_code})"


# ============================================================================
# Phases 13-15: Image analysis through the host docker socket
# ============================================================================


def _with_docker_socket(
    builder: StepSpecBuilder, config: Mapping[str, Any]
) -> StepSpecBuilder:
    socket = str(config.get("docker_socket") or "/var/run/docker.sock")
    return builder.with_mount(socket, socket, read_only=False)


_DIVE_METRIC_RE = re.compile(
    r"^\s*(efficiency|wastedBytes|userWastedPercent):\s*([0-9.]+)", re.MULTILINE
)


class ImageSizeStage(ToolStage):
    """Layer efficiency and wasted space of the built image with dive.

    ``dive --ci`` exits 1 when a rule fails.  Informational by default.
    """

    name = "image_size"
    display_name = "Phase 13: Container Size Analysis"
    phase_number = 13.0
    policy = GatePolicy.INFORMATIONAL
    outcome_map = OutcomeMap(finding_codes=frozenset({1}))
    required_artifacts = ("image",)
    default_image = "wagoodman/dive:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        efficiency = ctx.config.get("image_min_efficiency", 0.95)
        wasted = ctx.config.get("image_max_wasted_percent", 0.10)
        builder = StepSpecBuilder(self.image(ctx.config)).with_env("CI", "true")
        return (
            _with_docker_socket(builder, ctx.config)
            .with_args(
                str(artifacts["image"]),
                "--ci",
                "--source", "docker",
                f"--lowestEfficiency={efficiency}",
                f"--highestUserWastedPercent={wasted}",
            )
            .build()
        )

    @staticmethod
    def parse_metrics(output: str) -> Dict[str, float]:
        return {key: float(value) for key, value in _DIVE_METRIC_RE.findall(output)}

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        metrics = self.parse_metrics(result.stdout)
        return {
            "efficiency_percent": metrics.get("efficiency"),
            "wasted_bytes": int(metrics["wastedBytes"]) if "wastedBytes" in metrics else None,
            "user_wasted_percent": metrics.get("userWastedPercent"),
        }

    def finding_message(self, result: ExecResult) -> str:
        return "Image efficiency rules failed"


class ContainerScanStage(ToolStage):
    """Scan the built image with Trivy through the host docker socket."""

    name = "container_scan"
    display_name = "Phase 14: Container Image Scan"
    phase_number = 14.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(finding_codes=frozenset({1}))
    required_artifacts = ("image",)
    default_image = "aquasec/trivy:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        severities = severities_at_or_above(ctx.config.get("severity_threshold", "high"))
        return (
            _with_docker_socket(StepSpecBuilder(self.image(ctx.config)), ctx.config)
            .with_args(
                "image",
                "--severity", ",".join(severities),
                "--format", "json",
                "--exit-code", "1",
                str(artifacts["image"]),
            )
            .build()
        )


class CisBenchmarkStage(ToolStage):
    """CIS Docker Benchmark checks against the built image (Trivy compliance).

    Soft by default: failed controls warn without blocking.
    """

    name = "cis_benchmark"
    display_name = "Phase 15: CIS Docker Benchmark"
    phase_number = 15.0
    policy = GatePolicy.SOFT
    outcome_map = OutcomeMap(finding_codes=frozenset({1}))
    required_artifacts = ("image",)
    default_image = "aquasec/trivy:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        severities = severities_at_or_above(ctx.config.get("severity_threshold", "high"))
        compliance = str(ctx.config.get("cis_compliance_spec") or "docker-cis-1.6.0")
        return (
            _with_docker_socket(StepSpecBuilder(self.image(ctx.config)), ctx.config)
            .with_args(
                "image",
                "--compliance", compliance,
                "--severity", ",".join(severities),
                "--format", "json",
                "--exit-code", "1",
                str(artifacts["image"]),
            )
            .build()
        )

    def finding_message(self, result: ExecResult) -> str:
        return "CIS Docker Benchmark controls failed"


# ============================================================================
# Phase 16: Publish
# ============================================================================


class PublishStage(ToolStage):
    """Push the image to the run's ephemeral registry.

    The host pushes through the registry's published port; the produced
    ``image_ref`` uses the in-network address that the cluster pulls from,
    pinned by digest when the push reports one.
    """

    name = "publish"
    display_name = "Phase 16: Publish to Registry"
    phase_number = 16.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(any_nonzero_is_finding=True)
    required_services = frozenset({ServiceKind.REGISTRY})
    required_artifacts = ("image",)
    produced_artifacts = ("image_ref",)

    def _repository(self, ctx: RunContext) -> str:
        return f"{_app_name(ctx.config)}:{ctx.config.get('image_tag') or 'latest'}"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        registry = ctx.service(ServiceKind.REGISTRY)
        docker = shlex.quote(_docker(ctx.config))
        pushed = shlex.quote(f"{registry.host_endpoint}/{self._repository(ctx)}")
        source = shlex.quote(str(artifacts["image"]))
        return (
            StepSpecBuilder.host()
            .with_args(
                "sh", "-c",
                f"{docker} tag {source} {pushed} && {docker} push {pushed}",
            )
            .build()
        )

    def _digest(self, result: ExecResult) -> Optional[str]:
        match = _DIGEST_RE.search(result.stdout)
        return match.group(1) if match else None

    def collect_artifacts(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        if result.exit_code != 0:
            return {}
        ref = f"{ctx.endpoint(ServiceKind.REGISTRY)}/{self._repository(ctx)}"
        digest = self._digest(result)
        if digest:
            ref = f"{ref}@{digest}"
        return {"image_ref": ref}

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        return {"digest": self._digest(result)}

    def finding_message(self, result: ExecResult) -> str:
        return f"Image push failed (exit {result.exit_code})"


# ============================================================================
# Phases 17-18: Cosign signature and SBOM attestation
# ============================================================================


def _strip_tag(repository: str) -> str:
    """``registry:5000/app:1.0`` -> ``registry:5000/app``."""
    head, _, last = repository.rpartition("/")
    if ":" in last:
        last = last.split(":", 1)[0]
    return f"{head}/{last}" if head else last


def _cosign_sidecar_ref(image_ref: str, suffix: str) -> Optional[str]:
    """Where cosign stores a signature or attestation for a digest-pinned ref."""
    if "@sha256:" not in image_ref:
        return None
    repository, digest = image_ref.split("@", 1)
    return f"{_strip_tag(repository)}:{digest.replace(':', '-')}.{suffix}"


class _CosignStage(ToolStage):
    """Cosign against the run registry with the key pair from the run secrets.

    The key is materialised as a file inside the step only; the password
    travels as a secret env variable.
    """

    outcome_map = OutcomeMap(any_nonzero_is_finding=True)
    required_services = frozenset({ServiceKind.REGISTRY})
    default_image = "gcr.io/projectsigstore/cosign:latest"

    def config_issues(
        self, config: Mapping[str, Any], secrets: Mapping[str, str]
    ) -> List[str]:
        if not secrets.get("cosign_key"):
            return [
                "signing key missing: set SHIPGATE_COSIGN_KEY or "
                "SHIPGATE_COSIGN_KEY_FILE"
            ]
        return []

    def cosign_step(self, ctx: RunContext) -> StepSpecBuilder:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_service(ServiceKind.REGISTRY)
            .with_file("/cosign.key", ctx.secrets["cosign_key"])
            .with_secret_env("COSIGN_PASSWORD", ctx.secrets.get("cosign_password", ""))
        )

    @staticmethod
    def tlog_flag(config: Mapping[str, Any]) -> str:
        return "--tlog-upload=true" if config.get("cosign_tlog_upload") else "--tlog-upload=false"


class SignStage(_CosignStage):
    """Sign the published image with a Cosign key pair."""

    name = "sign"
    display_name = "Phase 17: Sign Image"
    phase_number = 17.0
    policy = GatePolicy.HARD
    required_artifacts = ("image_ref",)
    produced_artifacts = ("signed_ref",)

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            self.cosign_step(ctx)
            .with_args(
                "sign",
                "--key", "/cosign.key",
                self.tlog_flag(ctx.config),
                "--allow-insecure-registry",
                "--yes",
                str(artifacts["image_ref"]),
            )
            .build()
        )

    def collect_artifacts(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        if result.exit_code != 0:
            return {}
        return {"signed_ref": str(artifacts["image_ref"])}

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        return {
            "signature_ref": _cosign_sidecar_ref(str(artifacts["image_ref"]), "sig"),
            "transparency_log": bool(ctx.config.get("cosign_tlog_upload")),
        }

    def finding_message(self, result: ExecResult) -> str:
        return f"Image signing failed (exit {result.exit_code})"


class AttestSbomStage(_CosignStage):
    """Attach the run's CycloneDX SBOM to the published image as a signed
    in-toto attestation (``cosign attest``).
    """

    name = "attest_sbom"
    display_name = "Phase 18: Attest SBOM"
    phase_number = 18.0
    policy = GatePolicy.SOFT
    required_artifacts = ("image_ref", "sbom")

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            self.cosign_step(ctx)
            .with_file("/sbom.json", str(artifacts["sbom"]))
            .with_args(
                "attest",
                "--key", "/cosign.key",
                "--predicate", "/sbom.json",
                "--type", "cyclonedx",
                self.tlog_flag(ctx.config),
                "--allow-insecure-registry",
                "--yes",
                str(artifacts.get("signed_ref") or artifacts["image_ref"]),
            )
            .build()
        )

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        image_ref = str(artifacts.get("signed_ref") or artifacts["image_ref"])
        return {
            "attestation_ref": _cosign_sidecar_ref(image_ref, "att"),
            "predicate_type": "cyclonedx",
        }

    def finding_message(self, result: ExecResult) -> str:
        return f"SBOM attestation failed (exit {result.exit_code})"


# ============================================================================
# Phase 19: Deploy
# ============================================================================


_DEPLOYMENT_TEMPLATE = """---
apiVersion: v1
kind: Namespace
metadata:
  name: {namespace}
---
apiVersion: v1
kind: Service
metadata:
  name: {app}
  namespace: {namespace}
spec:
  type: NodePort
  selector:
    app: {app}
  ports:
    - name: http
      port: 80
      targetPort: {port}
      nodePort: {node_port}
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: {app}
  namespace: {namespace}
spec:
  replicas: 1
  selector:
    matchLabels:
      app: {app}
  template:
    metadata:
      labels:
        app: {app}
    spec:
      containers:
        - name: {app}
          image: {image}
          imagePullPolicy: Always
          ports:
            - containerPort: {port}
              name: http
          env:
            - name: DATA_STORE_URL
              value: "{data_store}"
          readinessProbe:
            httpGet:
              path: {health_path}
              port: {port}
            initialDelaySeconds: 5
            periodSeconds: 5
"""


class DeployStage(ToolStage):
    """Apply the workload to the ephemeral cluster and wait for rollout.

    Deploys the signed reference when the run signed the image, otherwise
    the published one.  Produces ``app_url``, the NodePort address of the
    workload on the run network.
    """

    name = "deploy"
    display_name = "Phase 19: Deploy to Ephemeral Cluster"
    phase_number = 19.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(any_nonzero_is_finding=True)
    required_services = frozenset({ServiceKind.CLUSTER, ServiceKind.DATA_STORE})
    required_artifacts = ("image_ref",)
    produced_artifacts = ("app_url",)
    default_image = "bitnami/kubectl:latest"

    def render_manifest(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> str:
        return _DEPLOYMENT_TEMPLATE.format(
            namespace=ctx.config.get("deploy_namespace") or "shipgate",
            app=_app_name(ctx.config),
            image=artifacts.get("signed_ref") or artifacts["image_ref"],
            port=int(ctx.config.get("app_port") or 8080),
            node_port=int(ctx.config.get("app_node_port") or 30080),
            data_store=ctx.endpoint(ServiceKind.DATA_STORE),
            health_path=ctx.config.get("health_path") or "/health",
        )

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        cluster = ctx.service(ServiceKind.CLUSTER)
        namespace = shlex.quote(str(ctx.config.get("deploy_namespace") or "shipgate"))
        app = shlex.quote(_app_name(ctx.config))
        timeout = shlex.quote(str(ctx.config.get("deploy_timeout") or "300s"))
        script = (
            f"kubectl apply -f {_MANIFEST_PATH} && "
            f"kubectl -n {namespace} rollout status deployment/{app} --timeout={timeout}"
        )
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_service(ServiceKind.CLUSTER)
            .with_service(ServiceKind.DATA_STORE)
            .with_file(_KUBECONFIG_PATH, cluster.attributes.get("kubeconfig", ""))
            .with_file(_MANIFEST_PATH, self.render_manifest(ctx, artifacts))
            .with_env("KUBECONFIG", _KUBECONFIG_PATH)
            .with_entrypoint("sh")
            .with_args("-c", script)
            .build()
        )

    def collect_artifacts(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        if result.exit_code != 0:
            return {}
        host = urlsplit(ctx.endpoint(ServiceKind.CLUSTER)).hostname
        node_port = int(ctx.config.get("app_node_port") or 30080)
        return {"app_url": f"http://{host}:{node_port}"}

    def finding_message(self, result: ExecResult) -> str:
        return f"Deployment did not roll out (exit {result.exit_code})"


# ============================================================================
# Phase 20: Integration tests
# ============================================================================


class IntegrationTestStage(ToolStage):
    """Run the project's integration suite against the deployed app."""

    name = "integration_test"
    display_name = "Phase 20: Integration Tests"
    phase_number = 20.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(any_nonzero_is_finding=True)
    required_services = frozenset({ServiceKind.CLUSTER, ServiceKind.DATA_STORE})
    required_artifacts = ("app_url",)
    default_image = "mcr.microsoft.com/dotnet/sdk:8.0"

    def config_issues(self, config, secrets) -> List[str]:
        if not str(config.get("integration_test_command") or "").strip():
            return ["integration_test_command is empty"]
        return []

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_source(ctx.target_path, read_only=False)
            .with_service(ServiceKind.CLUSTER)
            .with_service(ServiceKind.DATA_STORE)
            .with_env("APP_URL", str(artifacts["app_url"]))
            .with_entrypoint("sh")
            .with_args("-c", str(ctx.config["integration_test_command"]))
            .build()
        )

    def finding_message(self, result: ExecResult) -> str:
        return f"Integration tests failed (exit {result.exit_code})"


# ============================================================================
# Phase 21: DAST
# ============================================================================


class DastStage(ToolStage):
    """ZAP baseline scan of the running app.

    zap-baseline.py exits 1 on FAIL alerts, 2 on WARN alerts and 3 on any
    other failure.
    """

    name = "dast"
    display_name = "Phase 21: Dynamic Application Security Testing"
    phase_number = 21.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(finding_codes=frozenset({1, 2}))
    required_services = frozenset({ServiceKind.CLUSTER})
    required_artifacts = ("app_url",)
    default_image = "ghcr.io/zaproxy/zaproxy:stable"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_service(ServiceKind.CLUSTER)
            .with_args(
                "zap-baseline.py",
                "-t", str(artifacts["app_url"]),
                "-d",
                "-z", "-config api.disablekey=true",
            )
            .build()
        )


# ============================================================================
# Phase 22: API security
# ============================================================================


class ApiSecurityStage(ToolStage):
    """Nuclei templates against the app's API.

    Nuclei exits 0 whether or not it matched; every JSON line on stdout is
    one finding.
    """

    name = "api_security"
    display_name = "Phase 22: API Security Testing"
    phase_number = 22.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(findings_from_output=True)
    required_services = frozenset({ServiceKind.CLUSTER})
    required_artifacts = ("app_url",)
    default_image = "projectdiscovery/nuclei:latest"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        severities = severities_at_or_above(ctx.config.get("severity_threshold", "high"))
        tags = str(ctx.config.get("nuclei_tags") or "api")
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_service(ServiceKind.CLUSTER)
            .with_args(
                "-u", str(artifacts["app_url"]),
                "-tags", tags,
                "-severity", ",".join(s.lower() for s in severities),
                "-jsonl", "-silent",
            )
            .build()
        )

    @staticmethod
    def count_findings(stdout: str) -> int:
        count = 0
        for line in stdout.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except ValueError:
                continue
            if isinstance(record, dict) and ("template-id" in record or "info" in record):
                count += 1
        return count

    def detect_findings(self, config: Mapping[str, Any], result: ExecResult) -> bool:
        return self.count_findings(result.stdout) > 0

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        return {"finding_count": self.count_findings(result.stdout)}

    def finding_message(self, result: ExecResult) -> str:
        return f"Nuclei matched {self.count_findings(result.stdout)} template(s)"


# ============================================================================
# Phase 23: Performance
# ============================================================================


_K6_SCRIPT = """import http from 'k6/http';
import {{ check, sleep }} from 'k6';

export const options = {{
  vus: {vus},
  duration: '{duration}',
  thresholds: {{
    http_req_duration: ['p(95)<{p95}'],
    http_req_failed: ['rate<{error_rate}'],
  }},
}};

export default function () {{
  const response = http.get('{url}{path}');
  check(response, {{ 'status is 200': (r) => r.status === 200 }});
  sleep(1);
}}
"""


class PerformanceStage(ToolStage):
    """k6 load test with latency and error-rate thresholds.

    k6 exits 99 when a threshold is crossed.
    """

    name = "performance"
    display_name = "Phase 23: Performance Test"
    phase_number = 23.0
    policy = GatePolicy.SOFT
    outcome_map = OutcomeMap(finding_codes=frozenset({99}))
    required_services = frozenset({ServiceKind.CLUSTER})
    required_artifacts = ("app_url",)
    default_image = "grafana/k6:latest"

    def render_script(self, config: Mapping[str, Any], app_url: str) -> str:
        return _K6_SCRIPT.format(
            vus=int(config.get("perf_vus") or 10),
            duration=config.get("perf_duration") or "30s",
            p95=int(config.get("perf_p95_ms") or 500),
            error_rate=config.get("perf_max_error_rate", 0.01),
            url=app_url.rstrip("/"),
            path=config.get("health_path") or "/health",
        )

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        return (
            StepSpecBuilder(self.image(ctx.config))
            .with_service(ServiceKind.CLUSTER)
            .with_file("/scripts/test.js", self.render_script(ctx.config, str(artifacts["app_url"])))
            .with_args("run", "--quiet", "/scripts/test.js")
            .build()
        )

    def finding_message(self, result: ExecResult) -> str:
        return "Performance thresholds crossed"


# ============================================================================
# Phase 25: Release push
# ============================================================================


_RELEASE_SETTINGS = (
    ("release_registry", "config"),
    ("release_repository", "config"),
    ("registry_username", "secret"),
    ("registry_password", "secret"),
)


class ReleasePushStage(ToolStage):
    """Push the built image to an external registry (GHCR, Harbor, Docker Hub).

    Skipped when no release registry setting or credential is given at all.
    Once any of them is given, all four are required.  Credentials reach
    ``docker login`` through secret env variables and stdin only, and the
    host session is logged out afterwards.
    """

    name = "release_push"
    display_name = "Phase 25: Push to Release Registry"
    phase_number = 25.0
    policy = GatePolicy.HARD
    outcome_map = OutcomeMap(any_nonzero_is_finding=True)
    required_artifacts = ("image",)
    produced_artifacts = ("release_ref",)

    @staticmethod
    def _missing(config: Mapping[str, Any], secrets: Mapping[str, str]) -> List[str]:
        sources = {"config": config, "secret": secrets}
        return [key for key, kind in _RELEASE_SETTINGS if not sources[kind].get(key)]

    def skip_reason(
        self, config: Mapping[str, Any], secrets: Mapping[str, str]
    ) -> Optional[str]:
        if len(self._missing(config, secrets)) == len(_RELEASE_SETTINGS):
            return "release registry credentials not provided"
        return None

    def config_issues(
        self, config: Mapping[str, Any], secrets: Mapping[str, str]
    ) -> List[str]:
        missing = self._missing(config, secrets)
        if not missing:
            return []
        return [
            f"release push needs {', '.join(missing)} "
            "(set SHIPGATE_RELEASE_REGISTRY, SHIPGATE_RELEASE_REPOSITORY, "
            "SHIPGATE_REGISTRY_USERNAME and SHIPGATE_REGISTRY_PASSWORD)"
        ]

    @staticmethod
    def target(config: Mapping[str, Any]) -> str:
        registry = str(config["release_registry"]).rstrip("/")
        repository = str(config["release_repository"]).strip("/")
        if not repository.startswith(f"{registry}/"):
            repository = f"{registry}/{repository}"
        return f"{repository}:{config.get('image_tag') or 'latest'}"

    def build_step(self, ctx: RunContext, artifacts: Mapping[str, Any]) -> StepSpec:
        docker = shlex.quote(_docker(ctx.config))
        registry = shlex.quote(str(ctx.config["release_registry"]))
        target = shlex.quote(self.target(ctx.config))
        source = shlex.quote(str(artifacts["image"]))
        script = (
            f'printf "%s" "$SHIPGATE_RELEASE_PASSWORD" | '
            f'{docker} login {registry} -u "$SHIPGATE_RELEASE_USERNAME" --password-stdin '
            f"&& {docker} tag {source} {target} && {docker} push {target}; "
            f"status=$?; {docker} logout {registry} >/dev/null 2>&1; exit $status"
        )
        return (
            StepSpecBuilder.host()
            .with_secret_env("SHIPGATE_RELEASE_USERNAME", ctx.secrets["registry_username"])
            .with_secret_env("SHIPGATE_RELEASE_PASSWORD", ctx.secrets["registry_password"])
            .with_args("sh", "-c", script)
            .build()
        )

    def collect_artifacts(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        if result.exit_code != 0:
            return {}
        match = _DIGEST_RE.search(result.stdout)
        ref = _strip_tag(self.target(ctx.config))
        return {"release_ref": f"{ref}@{match.group(1)}" if match else self.target(ctx.config)}

    def result_metadata(
        self, ctx: RunContext, artifacts: Mapping[str, Any], result: ExecResult
    ) -> Dict[str, Any]:
        match = _DIGEST_RE.search(result.stdout)
        return {
            "registry": str(ctx.config["release_registry"]),
            "digest": match.group(1) if match else None,
        }

    def finding_message(self, result: ExecResult) -> str:
        return f"Push to release registry failed (exit {result.exit_code})"
