"""
Configuration Loader for the shipgate pipeline.

Implements a layered configuration system:
    hardcoded defaults < profile YAML < .shipgate.yml < env vars < CLI args

Secrets (signing key, registry credentials) never enter this dict; they
are read from the environment by ``load_secrets`` and handed to the run
context separately.

Usage:
    from shipgate.config_loader import build_unified_config, load_secrets
    config = build_unified_config(profile="quick", cli_args=args)
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

def get_default_config() -> Dict[str, Any]:
    """Return all configuration parameters with sensible defaults.

    This is the lowest-priority layer.  Every configurable key must appear
    here so that downstream code never needs to guard against missing keys.
    Per-tool image overrides (``<stage>_image``) are the exception: stages
    fall back to their own pinned image.
    """
    return {
        # -- Stage selection --
        "stages": "all",              # "all" or a list of stage names
        "gate_policies": {},          # stage name -> hard | soft | informational
        "severity_threshold": "high",
        "target_environment": "ephemeral",

        # -- Image --
        "image_name": "app",
        "image_tag": "latest",
        "dockerfile": "Dockerfile",

        # -- Build --
        "build_image": "mcr.microsoft.com/dotnet/sdk:8.0",
        "build_command": (
            "dotnet restore && dotnet build -c Release --no-restore "
            "&& dotnet test -c Release --no-build"
        ),
        "format_command": "dotnet format --verify-no-changes",
        "analyzer_command": (
            "dotnet restore && dotnet build -c Release "
            "/p:TreatWarningsAsErrors=true /p:EnforceCodeStyleInBuild=true "
            "/p:EnableNETAnalyzers=true /p:AnalysisLevel=latest "
            "/p:AnalysisMode=AllEnabledByDefault"
        ),
        "coverage_command": (
            "dotnet test -c Release --collect:\"XPlat Code Coverage\" "
            "--results-directory /tmp/coverage >&2 "
            "&& find /tmp/coverage -name coverage.cobertura.xml -exec cat {} +"
        ),
        "coverage_threshold": 80,     # minimum line coverage, percent
        "mutation_project": ".",
        "mutation_threshold": 80,     # minimum Stryker mutation score, percent

        # -- Scanners --
        "semgrep_configs": "p/security-audit,p/secrets",
        "iac_directory": ".",
        "policy_dir": "policy",
        "policy_inputs": "k8s",
        "nuclei_tags": "api,owasp",

        # -- Delivery --
        "deploy_namespace": "shipgate",
        "deploy_timeout": "300s",
        "app_port": 8080,
        "app_node_port": 30080,
        "health_path": "/health",
        "cosign_tlog_upload": False,
        "integration_test_image": "mcr.microsoft.com/dotnet/sdk:8.0",
        "integration_test_command": "dotnet test -c Release --filter Category=Integration",

        # -- External registry (release_push) --
        "release_registry": "",       # e.g. ghcr.io
        "release_repository": "",     # e.g. ghcr.io/acme/app

        # -- Performance --
        "perf_vus": 10,
        "perf_duration": "30s",
        "perf_p95_ms": 500,
        "perf_max_error_rate": 0.01,

        # -- Image efficiency (dive) --
        "image_min_efficiency": 0.95,
        "image_max_wasted_percent": 0.10,

        # -- Services --
        "service_readiness_timeout": 60.0,
        "service_probe_interval": 2.0,
        "registry_image": "registry:2",
        "cluster_image": "rancher/k3s:v1.28.5-k3s1",
        "data_store_image": "solr:9.6",

        # -- Execution --
        "docker_bin": "docker",
        "docker_socket": "/var/run/docker.sock",
        "cis_compliance_spec": "docker-cis-1.6.0",
        "step_timeout": 0,            # seconds; 0 = no substrate ceiling

        # -- Output --
        "report_dir": "shipgate-reports",
        "export_reports": True,
    }

# ---------------------------------------------------------------------------
# Profile loading
# ---------------------------------------------------------------------------

def _profile_search_paths(profile_name: str) -> List[Path]:
    """Return candidate YAML paths for *profile_name*, in priority order."""
    return [
        PACKAGE_ROOT / "profiles" / f"{profile_name}.yml",               # built-in
        Path.home() / ".shipgate" / "profiles" / f"{profile_name}.yml",  # user
        Path(".shipgate") / "profiles" / f"{profile_name}.yml",          # project-local
    ]


def _load_raw_profile(profile_name: str, _chain: Optional[List[str]] = None) -> dict:
    """Load raw YAML dict for *profile_name*, resolving ``_extends``.

    Raises
    ------
    FileNotFoundError
        If the profile YAML cannot be found in any search path.
    ValueError
        If a circular ``_extends`` chain is detected.
    """
    if _chain is None:
        _chain = []

    if profile_name in _chain:
        raise ValueError(
            f"Circular profile inheritance detected: "
            f"{' -> '.join(_chain)} -> {profile_name}"
        )
    _chain.append(profile_name)

    loaded_path: Optional[Path] = None
    for candidate in _profile_search_paths(profile_name):
        if candidate.is_file():
            loaded_path = candidate
            break

    if loaded_path is None:
        raise FileNotFoundError(
            f"Profile '{profile_name}' not found.  Searched: "
            + ", ".join(str(p) for p in _profile_search_paths(profile_name))
        )

    logger.info("Loading profile '%s' from %s", profile_name, loaded_path)
    with open(loaded_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    parent_name = raw.pop("_extends", None)
    if parent_name:
        parent = _load_raw_profile(parent_name, _chain=_chain)
        raw = _deep_merge_nested(parent, raw)

    return raw


def _deep_merge_nested(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (nested dicts)."""
    merged = dict(base)
    for key, value in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _deep_merge_nested(merged[key], value)
        else:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# Flatten nested YAML -> flat config dict
# ---------------------------------------------------------------------------

_DIRECT_SECTIONS = ("image", "build", "scanners", "deploy", "performance", "output")

_SERVICE_KEY_MAP = {
    "readiness_timeout": "service_readiness_timeout",
    "probe_interval": "service_probe_interval",
    "registry_image": "registry_image",
    "cluster_image": "cluster_image",
    "data_store_image": "data_store_image",
}

_TOP_LEVEL_SCALARS = (
    "name", "description", "stages", "severity_threshold", "target_environment",
)


def flatten_profile(nested: dict) -> Dict[str, Any]:
    """Convert a nested profile YAML dict to a flat config dict.

    Mapping rules:
    - ``nested["gates"]``               -> ``gate_policies`` (dict)
    - ``nested["tools"][stage]``        -> ``{stage}_image``
    - ``nested["services"][key]``       -> ``service_{key}`` for timings,
      image keys directly
    - ``nested["image" | "build" | "scanners" | "deploy" | "performance"
      | "output"][key]``               -> key (directly)
    - Top-level scalars (``name``, ``description``, ``stages``,
      ``severity_threshold``, ``target_environment``) pass through.

    Only non-None values are included.
    """
    flat: Dict[str, Any] = {}

    gates = nested.get("gates")
    if isinstance(gates, dict):
        flat["gate_policies"] = {k: v for k, v in gates.items() if v is not None}

    tools = nested.get("tools")
    if isinstance(tools, dict):
        for stage_name, image in tools.items():
            if image is not None:
                flat[f"{stage_name}_image"] = image

    services = nested.get("services")
    if isinstance(services, dict):
        for key, value in services.items():
            if value is None:
                continue
            if key not in _SERVICE_KEY_MAP:
                logger.warning("Ignoring unknown services key '%s'", key)
                continue
            flat[_SERVICE_KEY_MAP[key]] = value

    for section in _DIRECT_SECTIONS:
        block = nested.get(section)
        if isinstance(block, dict):
            for key, value in block.items():
                if value is not None:
                    flat[key] = value

    for scalar_key in _TOP_LEVEL_SCALARS:
        if nested.get(scalar_key) is not None:
            flat[scalar_key] = nested[scalar_key]

    return flat


def load_profile(profile_name: str) -> Dict[str, Any]:
    """Load a profile by name and return a flat config dict.

    Search order (first match wins):
      1. ``shipgate/profiles/{name}.yml``        (built-in)
      2. ``~/.shipgate/profiles/{name}.yml``     (user)
      3. ``.shipgate/profiles/{name}.yml``       (project-local)

    The ``_extends`` key enables profile inheritance: the parent profile is
    loaded first and the child values are overlaid on top.
    """
    raw = _load_raw_profile(profile_name)
    return flatten_profile(raw)

# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

# Mapping: (env_var_name, ...) -> (config_key, type)
# Types: "str", "bool", "int", "float", "list"
_ENV_MAPPINGS: List[tuple] = [
    # Selection
    (("SHIPGATE_STAGES",),                      "stages",                    "list"),
    (("SHIPGATE_SEVERITY", "SHIPGATE_SEVERITY_THRESHOLD"), "severity_threshold", "str"),
    (("SHIPGATE_TARGET_ENV",),                  "target_environment",        "str"),

    # Image
    (("SHIPGATE_IMAGE_NAME",),                  "image_name",                "str"),
    (("SHIPGATE_IMAGE_TAG", "SHIPGATE_TAG"),    "image_tag",                 "str"),
    (("SHIPGATE_DOCKERFILE",),                  "dockerfile",                "str"),

    # Build
    (("SHIPGATE_BUILD_IMAGE",),                 "build_image",               "str"),
    (("SHIPGATE_BUILD_COMMAND",),               "build_command",             "str"),
    (("SHIPGATE_FORMAT_COMMAND",),              "format_command",            "str"),
    (("SHIPGATE_ANALYZER_COMMAND",),            "analyzer_command",          "str"),
    (("SHIPGATE_COVERAGE_COMMAND",),            "coverage_command",          "str"),
    (("SHIPGATE_COVERAGE_THRESHOLD",),          "coverage_threshold",        "float"),
    (("SHIPGATE_MUTATION_THRESHOLD",),          "mutation_threshold",        "int"),

    # Delivery
    (("SHIPGATE_DEPLOY_NAMESPACE",),            "deploy_namespace",          "str"),
    (("SHIPGATE_APP_PORT",),                    "app_port",                  "int"),
    (("SHIPGATE_HEALTH_PATH",),                 "health_path",               "str"),
    (("SHIPGATE_COSIGN_TLOG_UPLOAD",),          "cosign_tlog_upload",        "bool"),
    (("SHIPGATE_RELEASE_REGISTRY",),            "release_registry",          "str"),
    (("SHIPGATE_RELEASE_REPOSITORY",),          "release_repository",        "str"),

    # Services
    (("SHIPGATE_SERVICE_READINESS_TIMEOUT",),   "service_readiness_timeout", "float"),
    (("SHIPGATE_SERVICE_PROBE_INTERVAL",),      "service_probe_interval",    "float"),
    (("SHIPGATE_REGISTRY_IMAGE",),              "registry_image",            "str"),
    (("SHIPGATE_CLUSTER_IMAGE",),               "cluster_image",             "str"),
    (("SHIPGATE_DATA_STORE_IMAGE",),            "data_store_image",          "str"),

    # Execution
    (("SHIPGATE_DOCKER_BIN",),                  "docker_bin",                "str"),
    (("SHIPGATE_STEP_TIMEOUT",),                "step_timeout",              "int"),

    # Output
    (("SHIPGATE_REPORT_DIR",),                  "report_dir",                "str"),
    (("SHIPGATE_EXPORT_REPORTS",),              "export_reports",            "bool"),
]


def _coerce(raw: str, type_tag: str) -> Any:
    """Convert a raw env-var string to the appropriate Python type."""
    if type_tag == "bool":
        return raw.lower() == "true"
    if type_tag == "int":
        return int(raw)
    if type_tag == "float":
        return float(raw)
    if type_tag == "list":
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def load_env_overrides() -> Dict[str, Any]:
    """Load configuration values from explicitly-set environment variables.

    Only variables that are **present** in ``os.environ`` are returned.
    The first name found wins (left-to-right in the mapping tuple).
    """
    overrides: Dict[str, Any] = {}

    for env_names, config_key, type_tag in _ENV_MAPPINGS:
        for env_name in env_names:
            if env_name in os.environ:
                try:
                    overrides[config_key] = _coerce(os.environ[env_name], type_tag)
                except (ValueError, TypeError) as exc:
                    logger.warning(
                        "Ignoring env var %s: could not convert %r to %s (%s)",
                        env_name, os.environ[env_name], type_tag, exc,
                    )
                break  # first match wins

    return overrides

# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------

# Mapping: secret key -> env var names (first found wins)
_SECRET_ENV: Dict[str, tuple] = {
    "cosign_key": ("SHIPGATE_COSIGN_KEY", "COSIGN_KEY"),
    "cosign_password": ("SHIPGATE_COSIGN_PASSWORD", "COSIGN_PASSWORD"),
    "registry_username": ("SHIPGATE_REGISTRY_USERNAME", "REGISTRY_USERNAME"),
    "registry_password": ("SHIPGATE_REGISTRY_PASSWORD", "REGISTRY_PASSWORD"),
}


def load_secrets(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Read signing keys and registry credentials from the environment.

    ``SHIPGATE_COSIGN_KEY_FILE`` may point at a key file instead of putting
    the PEM in an env var.  Values are never logged.
    """
    env = os.environ if environ is None else environ
    secrets: Dict[str, str] = {}

    for key, env_names in _SECRET_ENV.items():
        for env_name in env_names:
            if env.get(env_name):
                secrets[key] = env[env_name]
                break

    key_file = env.get("SHIPGATE_COSIGN_KEY_FILE")
    if key_file and "cosign_key" not in secrets:
        try:
            secrets["cosign_key"] = Path(key_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"Cannot read SHIPGATE_COSIGN_KEY_FILE {key_file}: {exc}"
            ) from exc

    logger.debug("Loaded secrets: %s", sorted(secrets))
    return secrets

# ---------------------------------------------------------------------------
# CLI argument extraction
# ---------------------------------------------------------------------------

# Mapping: argparse attribute -> config key
_CLI_ATTR_MAP: Dict[str, str] = {
    "profile": "_profile",  # handled separately in build_unified_config
    "stages": "stages",
    "severity": "severity_threshold",
    "target_env": "target_environment",
    "image_name": "image_name",
    "tag": "image_tag",
    "report_dir": "report_dir",
    "export_reports": "export_reports",
    "readiness_timeout": "service_readiness_timeout",
}


def extract_cli_overrides(args: Any) -> Dict[str, Any]:
    """Extract explicitly-set CLI arguments into a flat config dict.

    Only attributes whose value is not ``None`` are included, so that
    argparse defaults do not shadow earlier layers.  ``--stages`` accepts a
    comma-separated string.
    """
    if args is None:
        return {}

    overrides: Dict[str, Any] = {}
    for attr, config_key in _CLI_ATTR_MAP.items():
        value = getattr(args, attr, None)
        if value is not None:
            overrides[config_key] = value

    stages = overrides.get("stages")
    if isinstance(stages, str):
        overrides["stages"] = [s.strip() for s in stages.split(",") if s.strip()]

    return overrides

# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Merge *override* into *base*.  Only non-None override values win.

    This operates on **flat** dicts; ``gate_policies`` is the one nested
    value and is merged key-by-key.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if key == "gate_policies" and isinstance(value, dict):
            merged[key] = {**(merged.get(key) or {}), **value}
        else:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# .shipgate.yml loader
# ---------------------------------------------------------------------------

def _load_shipgate_yml(repo_path: str) -> Dict[str, Any]:
    """Load ``.shipgate.yml`` from *repo_path* and return flat config dict.

    Returns an empty dict if the file does not exist.
    """
    yml_path = Path(repo_path) / ".shipgate.yml"
    if not yml_path.is_file():
        return {}

    logger.info("Loading .shipgate.yml from %s", yml_path)
    with open(yml_path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    return flatten_profile(raw)

# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def build_unified_config(
    profile: Optional[str] = None,
    cli_args: Any = None,
    repo_path: str = ".",
    strict: bool = False,
) -> Dict[str, Any]:
    """Build a fully-merged configuration dict.

    Layer precedence (last wins):
        1. Hard-coded defaults          (``get_default_config()``)
        2. Profile YAML                 (``load_profile()``)
        3. ``.shipgate.yml``            (project-level overrides)
        4. Environment variables        (``load_env_overrides()``)
        5. CLI arguments                (``extract_cli_overrides()``)

    Parameters
    ----------
    profile:
        Explicit profile name.  If ``None``, the function checks
        ``cli_args.profile``, then the ``SHIPGATE_PROFILE`` env var.
    cli_args:
        An ``argparse.Namespace`` (or ``None``).
    repo_path:
        Path to the repository root (used for ``.shipgate.yml`` lookup).
    strict:
        Raise ``ConfigurationError`` on a missing profile or any ``ERROR:``
        issue from ``validate_config``.
    """
    # -- Layer 1: defaults --
    config = get_default_config()

    # -- Determine profile name --
    profile_name = profile
    if profile_name is None and cli_args is not None:
        profile_name = getattr(cli_args, "profile", None)
    if profile_name is None:
        profile_name = os.environ.get("SHIPGATE_PROFILE")

    # -- Layer 2: profile --
    if profile_name:
        try:
            profile_values = load_profile(profile_name)
            config = deep_merge(config, profile_values)
            logger.info("Applied profile '%s'", profile_name)
        except FileNotFoundError as exc:
            if strict:
                raise ConfigurationError(str(exc)) from exc
            logger.warning("Profile '%s' not found; skipping", profile_name)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

    # -- Layer 3: .shipgate.yml --
    shipgate_yml = _load_shipgate_yml(repo_path)
    if shipgate_yml:
        config = deep_merge(config, shipgate_yml)
        logger.info("Applied .shipgate.yml overrides (%d keys)", len(shipgate_yml))

    # -- Layer 4: env vars --
    env_overrides = load_env_overrides()
    if env_overrides:
        config = deep_merge(config, env_overrides)
        logger.debug("Applied %d env-var overrides", len(env_overrides))

    # -- Layer 5: CLI args --
    cli_overrides = extract_cli_overrides(cli_args)
    cli_overrides.pop("_profile", None)
    if cli_overrides:
        config = deep_merge(config, cli_overrides)
        logger.debug("Applied %d CLI overrides", len(cli_overrides))

    if strict:
        errors = [i for i in validate_config(config) if i.startswith("ERROR:")]
        if errors:
            raise ConfigurationError("; ".join(errors))

    return config

# ---------------------------------------------------------------------------
# Profile discovery
# ---------------------------------------------------------------------------

def list_available_profiles() -> List[str]:
    """Return the names of all available profiles."""
    names: set = set()

    search_dirs = [
        PACKAGE_ROOT / "profiles",
        Path.home() / ".shipgate" / "profiles",
        Path(".shipgate") / "profiles",
    ]
    for directory in search_dirs:
        if directory.is_dir():
            for yml_file in directory.glob("*.yml"):
                names.add(yml_file.stem)

    return sorted(names)

# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------

_VALID_SEVERITIES = {"low", "medium", "high", "critical"}
_VALID_POLICIES = {"hard", "soft", "informational"}
_VALID_TARGET_ENVIRONMENTS = {"ephemeral"}


def validate_config(
    config: Dict[str, Any], known_stages: Optional[Iterable[str]] = None
) -> List[str]:
    """Validate a configuration dict and return a list of warnings/errors.

    Parameters
    ----------
    config:
        Flat configuration dict.
    known_stages:
        Stage names the caller can run.  When given, unknown names in
        ``stages`` and ``gate_policies`` are errors.

    Returns
    -------
    list[str]
        Human-readable ``ERROR:``/``WARNING:`` messages.  An empty list
        means the config is valid.
    """
    issues: List[str] = []
    known = set(known_stages) if known_stages is not None else None

    # -- Stage selection --
    stages = config.get("stages", "all")
    if stages != "all":
        if not isinstance(stages, (list, tuple)) or not all(isinstance(s, str) for s in stages):
            issues.append("ERROR: stages must be 'all' or a list of stage names.")
        elif not stages:
            issues.append("ERROR: stages is empty; nothing to run.")
        else:
            duplicates = sorted({s for s in stages if list(stages).count(s) > 1})
            if duplicates:
                issues.append(f"ERROR: Duplicate stage names: {', '.join(duplicates)}")
            if known is not None:
                unknown = [s for s in stages if s not in known]
                if unknown:
                    issues.append(
                        f"ERROR: Unknown stages: {', '.join(unknown)}. "
                        f"Available: {', '.join(sorted(known))}"
                    )

    # -- Gate policies --
    policies = config.get("gate_policies") or {}
    if not isinstance(policies, dict):
        issues.append("ERROR: gate_policies must be a mapping of stage name to policy.")
    else:
        for stage_name, policy in policies.items():
            if str(policy).lower() not in _VALID_POLICIES:
                issues.append(
                    f"ERROR: Invalid gate policy '{policy}' for stage '{stage_name}'. "
                    f"Must be one of: {', '.join(sorted(_VALID_POLICIES))}"
                )
            if known is not None and stage_name not in known:
                issues.append(f"ERROR: gate_policies names unknown stage '{stage_name}'.")

    # -- Valid enum values --
    severity = str(config.get("severity_threshold", "high")).lower()
    if severity not in _VALID_SEVERITIES:
        issues.append(
            f"ERROR: Invalid severity_threshold '{severity}'. "
            f"Must be one of: {', '.join(sorted(_VALID_SEVERITIES))}"
        )

    target_env = config.get("target_environment", "ephemeral")
    if target_env not in _VALID_TARGET_ENVIRONMENTS:
        issues.append(
            f"WARNING: target_environment '{target_env}' is not provisioned by "
            f"shipgate; delivery stages still deploy to the ephemeral cluster."
        )

    # -- Image --
    if not config.get("image_name"):
        issues.append("ERROR: image_name must not be empty.")
    if not config.get("image_tag"):
        issues.append("ERROR: image_tag must not be empty.")

    # -- Numeric range checks --
    timeout = config.get("service_readiness_timeout", 60.0)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        issues.append("ERROR: service_readiness_timeout must be > 0.")

    interval = config.get("service_probe_interval", 2.0)
    if not isinstance(interval, (int, float)) or interval <= 0:
        issues.append("ERROR: service_probe_interval must be > 0.")
    elif isinstance(timeout, (int, float)) and interval > timeout:
        issues.append(
            "WARNING: service_probe_interval exceeds service_readiness_timeout; "
            "every wait is cut short at the deadline."
        )

    for key in ("coverage_threshold", "mutation_threshold"):
        value = config.get(key, 80)
        if not isinstance(value, (int, float)) or not 0 <= value <= 100:
            issues.append(f"ERROR: {key} must be between 0 and 100.")

    for key in ("image_min_efficiency", "image_max_wasted_percent"):
        value = config.get(key, 0.5)
        if not isinstance(value, (int, float)) or not 0 <= value <= 1:
            issues.append(f"ERROR: {key} must be a ratio between 0 and 1.")

    step_timeout = config.get("step_timeout", 0)
    if isinstance(step_timeout, (int, float)) and step_timeout < 0:
        issues.append("ERROR: step_timeout must be >= 0.")

    # -- Output --
    if config.get("export_reports") and not config.get("report_dir"):
        issues.append("ERROR: export_reports is true but report_dir is empty.")

    return issues
