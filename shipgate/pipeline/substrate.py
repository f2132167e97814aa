"""
Execution Substrate - Runs a ``StepSpec`` in isolation.

The orchestrator treats the substrate as an opaque synchronous call: it
returns the raw exit code and output, or raises ``InfrastructureError``
when the step could not be run at all.  Interpreting a non-zero exit code
is the stage's job (see ``OutcomeMap``), never the substrate's.

``DockerSubstrate`` shells out to ``docker run --rm``.  Steps without an
image run directly on the host (``docker build``, ``docker push``).
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, runtime_checkable

from ..exceptions import InfrastructureError
from .protocol import ServiceKind
from .step_spec import StepSpec

logger = logging.getLogger(__name__)

# docker run: 125 = daemon error, 126 = command not executable, 127 = not found
DOCKER_RUN_FAILURE_CODES = frozenset({125, 126, 127})


@dataclass(frozen=True)
class ExecResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def combined_output(self) -> str:
        if self.stderr and self.stdout:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


@runtime_checkable
class ExecutionSubstrate(Protocol):
    def run(
        self,
        spec: StepSpec,
        endpoints: Optional[Mapping[ServiceKind, str]] = None,
        network: Optional[str] = None,
    ) -> ExecResult:
        ...


def endpoint_env(endpoints: Optional[Mapping[ServiceKind, str]]) -> Dict[str, str]:
    """Environment variables exposing bound service endpoints to a step."""
    env: Dict[str, str] = {}
    for kind, endpoint in (endpoints or {}).items():
        env[f"SHIPGATE_{kind.value.upper()}_ENDPOINT"] = endpoint
    return env


class DockerSubstrate:
    """Run steps through the local docker CLI.

    Parameters
    ----------
    docker_bin : str
        Path or name of the docker executable.
    timeout : float | None
        Optional hard ceiling per step.  The orchestrator imposes no stage
        deadline by default; stages manage their own.
    """

    def __init__(self, docker_bin: str = "docker", timeout: Optional[float] = None):
        self.docker_bin = docker_bin
        self.timeout = timeout

    def run(
        self,
        spec: StepSpec,
        endpoints: Optional[Mapping[ServiceKind, str]] = None,
        network: Optional[str] = None,
    ) -> ExecResult:
        bound = {
            kind: endpoint
            for kind, endpoint in (endpoints or {}).items()
            if spec.on_host or kind in spec.services
        }
        logger.debug("Executing step: %s", spec.describe())

        if spec.on_host:
            return self._run_host(spec, bound)

        with tempfile.TemporaryDirectory(prefix="shipgate-step-") as scratch:
            argv = self.build_argv(spec, bound, network, Path(scratch))
            env = dict(os.environ)
            env.update(dict(spec.secret_env))
            result = self._invoke(argv, env=env, cwd=None)

        if result.exit_code in DOCKER_RUN_FAILURE_CODES:
            raise InfrastructureError(
                f"docker could not run {spec.image} "
                f"(exit {result.exit_code}): {result.stderr.strip()}",
                exit_code=result.exit_code,
                output=result.combined_output,
            )
        return result

    def build_argv(
        self,
        spec: StepSpec,
        endpoints: Mapping[ServiceKind, str],
        network: Optional[str],
        scratch: Path,
    ) -> List[str]:
        """Translate a container ``StepSpec`` into a ``docker run`` argv.

        Secret values are passed by name only (``-e NAME``) and supplied
        through the child environment, so they never appear in argv.
        """
        argv = [self.docker_bin, "run", "--rm"]

        net = spec.network or (network if spec.services else None)
        if net:
            argv.extend(["--network", net])

        for mount in spec.mounts:
            suffix = ":ro" if mount.read_only else ""
            argv.extend(["-v", f"{mount.source}:{mount.target}{suffix}"])

        for index, (path, content) in enumerate(spec.files):
            local = scratch / f"file-{index}"
            local.write_text(content, encoding="utf-8")
            argv.extend(["-v", f"{local}:{path}:ro"])

        if spec.workdir:
            argv.extend(["-w", spec.workdir])

        for name, value in spec.env:
            argv.extend(["-e", f"{name}={value}"])
        for name, value in endpoint_env(endpoints).items():
            argv.extend(["-e", f"{name}={value}"])
        for name, _ in spec.secret_env:
            argv.extend(["-e", name])

        if spec.entrypoint:
            argv.extend(["--entrypoint", spec.entrypoint])

        argv.append(spec.image)
        argv.extend(spec.command)
        return argv

    def _run_host(
        self, spec: StepSpec, endpoints: Mapping[ServiceKind, str]
    ) -> ExecResult:
        env = dict(os.environ)
        env.update(dict(spec.env))
        env.update(dict(spec.secret_env))
        env.update(endpoint_env(endpoints))
        return self._invoke(list(spec.command), env=env, cwd=spec.workdir)

    def _invoke(
        self, argv: List[str], env: Dict[str, str], cwd: Optional[str]
    ) -> ExecResult:
        start = time.time()
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                env=env,
                cwd=cwd,
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise InfrastructureError(f"Executable not found: {argv[0]}") from exc
        except subprocess.TimeoutExpired as exc:
            raise InfrastructureError(
                f"Step exceeded substrate timeout of {self.timeout}s: {argv[0]}"
            ) from exc
        except OSError as exc:
            raise InfrastructureError(f"Could not start {argv[0]}: {exc}") from exc

        return ExecResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_seconds=time.time() - start,
        )
