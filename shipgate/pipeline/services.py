"""
Service Provisioner - Ephemeral backing services for one pipeline run.

Stages that push images, deploy workloads or run integration tests depend
on short-lived services: a container registry, a Kubernetes cluster and a
search data store.  The provisioner starts each kind at most once per run,
blocks until a readiness probe passes, exposes endpoints read-only and tears
everything down at the end of the run.

Lifecycle::

    provisioner = ServiceProvisioner(run_id="abc123")
    handle = provisioner.acquire(ServiceKind.REGISTRY)   # starts + waits
    again = provisioner.acquire(ServiceKind.REGISTRY)    # same handle
    endpoint = provisioner.bind(handle, "publish")
    provisioner.release_all()                            # best effort

Readiness polling uses tenacity with a deadline stop; missing the deadline
raises ``ServiceUnavailable``, which the gate always treats as Hard.
"""

from __future__ import annotations

import enum
import logging
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import (
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

import requests
from tenacity import (
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
)

from ..exceptions import ConfigurationError, InfrastructureError, ServiceUnavailable
from .protocol import ServiceKind
from .substrate import ExecResult

logger = logging.getLogger(__name__)

DEFAULT_READINESS_TIMEOUT = 60.0
DEFAULT_PROBE_INTERVAL = 2.0


class ReadinessState(str, enum.Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    RELEASED = "released"


# ============================================================================
# Service definitions
# ============================================================================


@dataclass(frozen=True)
class ServiceDefinition:
    """How to start and probe one kind of service.

    ``endpoint_template`` is formatted with ``alias`` and ``port`` to give
    the address stage containers use on the run network.
    """

    kind: ServiceKind
    image: str
    alias: str
    port: int
    endpoint_template: str = "{alias}:{port}"
    command: Tuple[str, ...] = ()
    env: Tuple[Tuple[str, str], ...] = ()
    files: Tuple[Tuple[str, str], ...] = ()
    privileged: bool = False
    probe: str = "http"  # http | exec
    probe_path: str = "/"
    probe_command: Tuple[str, ...] = ()
    requires: Tuple[ServiceKind, ...] = ()
    kubeconfig_path: Optional[str] = None

    def endpoint(self) -> str:
        return self.endpoint_template.format(alias=self.alias, port=self.port)


_REGISTRY_MIRROR = """mirrors:
  "registry:5000":
    endpoint:
      - "http://registry:5000"
"""


def default_definitions(
    k3s_image: str = "rancher/k3s:v1.28.5-k3s1",
    registry_image: str = "registry:2",
    data_store_image: str = "solr:9.6",
) -> Dict[ServiceKind, ServiceDefinition]:
    """The registry, cluster and data store used by the delivery stages."""
    return {
        ServiceKind.REGISTRY: ServiceDefinition(
            kind=ServiceKind.REGISTRY,
            image=registry_image,
            alias="registry",
            port=5000,
            probe="http",
            probe_path="/v2/",
        ),
        ServiceKind.CLUSTER: ServiceDefinition(
            kind=ServiceKind.CLUSTER,
            image=k3s_image,
            alias="k3s",
            port=6443,
            endpoint_template="https://{alias}:{port}",
            command=(
                "server",
                "--disable=traefik",
                "--disable=metrics-server",
                "--write-kubeconfig-mode=644",
                "--tls-san=k3s",
            ),
            files=(("/etc/rancher/k3s/registries.yaml", _REGISTRY_MIRROR),),
            privileged=True,
            probe="exec",
            probe_command=("kubectl", "get", "--raw=/readyz"),
            requires=(ServiceKind.REGISTRY,),
            kubeconfig_path="/etc/rancher/k3s/k3s.yaml",
        ),
        ServiceKind.DATA_STORE: ServiceDefinition(
            kind=ServiceKind.DATA_STORE,
            image=data_store_image,
            alias="solr",
            port=8983,
            endpoint_template="http://{alias}:{port}/solr/search",
            command=("solr-precreate", "search"),
            probe="http",
            probe_path="/solr/admin/info/system",
        ),
    }


@dataclass
class ServiceHandle:
    """A live service bound to one run.

    Attributes
    ----------
    kind : ServiceKind
    endpoint : str
        Address reachable from stage containers on the run network.
    host_endpoint : str
        ``host:port`` reachable from the orchestrator host.
    instance_id : str
        Backend identifier (container id).
    state : ReadinessState
    attributes : dict
        Extra values exposed to stages, e.g. ``kubeconfig``.
    bound_stages : list[str]
        Stages that were given this endpoint.
    """

    kind: ServiceKind
    endpoint: str
    host_endpoint: str = ""
    instance_id: str = ""
    state: ReadinessState = ReadinessState.STARTING
    attributes: Dict[str, str] = field(default_factory=dict)
    bound_stages: List[str] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.state is ReadinessState.READY


# ============================================================================
# Backends
# ============================================================================


@dataclass(frozen=True)
class StartedService:
    instance_id: str
    host_port: int


@runtime_checkable
class ServiceBackend(Protocol):
    def create_network(self, name: str) -> None:
        ...

    def remove_network(self, name: str) -> None:
        ...

    def start(
        self, definition: ServiceDefinition, name: str, network: str
    ) -> StartedService:
        ...

    def exec(self, instance_id: str, command: Sequence[str]) -> ExecResult:
        ...

    def stop(self, instance_id: str) -> None:
        ...


class DockerServiceBackend:
    """Start services as detached containers via the docker CLI."""

    def __init__(self, docker_bin: str = "docker", command_timeout: float = 120.0):
        self.docker_bin = docker_bin
        self.command_timeout = command_timeout
        self._scratch: Dict[str, Path] = {}

    def _docker(self, *args: str) -> ExecResult:
        start = time.time()
        try:
            completed = subprocess.run(
                [self.docker_bin, *args],
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise InfrastructureError(f"Executable not found: {self.docker_bin}") from exc
        except subprocess.TimeoutExpired as exc:
            raise InfrastructureError(f"docker {args[0]} timed out") from exc
        except OSError as exc:
            raise InfrastructureError(f"Could not run docker {args[0]}: {exc}") from exc
        return ExecResult(
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_seconds=time.time() - start,
        )

    def _checked(self, *args: str) -> str:
        result = self._docker(*args)
        if result.exit_code != 0:
            raise InfrastructureError(
                f"docker {' '.join(args[:2])} failed (exit {result.exit_code}): "
                f"{result.stderr.strip()}"
            )
        return result.stdout.strip()

    def create_network(self, name: str) -> None:
        self._checked("network", "create", name)

    def remove_network(self, name: str) -> None:
        self._checked("network", "rm", name)

    def start(
        self, definition: ServiceDefinition, name: str, network: str
    ) -> StartedService:
        args = [
            "run", "-d",
            "--name", name,
            "--network", network,
            "--network-alias", definition.alias,
            "-p", f"127.0.0.1::{definition.port}",
        ]
        if definition.privileged:
            args.append("--privileged")
        scratch: Optional[Path] = None
        if definition.files:
            scratch = Path(tempfile.mkdtemp(prefix=f"{name}-"))
            for index, (path, content) in enumerate(definition.files):
                local = scratch / f"file-{index}"
                local.write_text(content, encoding="utf-8")
                args.extend(["-v", f"{local}:{path}:ro"])
        for key, value in definition.env:
            args.extend(["-e", f"{key}={value}"])
        args.append(definition.image)
        args.extend(definition.command)

        try:
            instance_id = self._checked(*args)
        except InfrastructureError:
            if scratch is not None:
                shutil.rmtree(scratch, ignore_errors=True)
            raise
        if scratch is not None:
            self._scratch[instance_id] = scratch

        try:
            mapping = self._checked("port", instance_id, f"{definition.port}/tcp")
            # "127.0.0.1:49153" (first line when several bindings exist)
            host_port = int(mapping.splitlines()[0].rsplit(":", 1)[1])
        except (InfrastructureError, ValueError, IndexError) as exc:
            try:
                self.stop(instance_id)
            except InfrastructureError as stop_exc:
                logger.warning("Could not remove %s: %s", name, stop_exc)
            raise InfrastructureError(
                f"Could not resolve published port for {name}: {exc}"
            ) from exc
        return StartedService(instance_id=instance_id, host_port=host_port)

    def exec(self, instance_id: str, command: Sequence[str]) -> ExecResult:
        return self._docker("exec", instance_id, *command)

    def stop(self, instance_id: str) -> None:
        try:
            self._checked("rm", "-f", instance_id)
        finally:
            scratch = self._scratch.pop(instance_id, None)
            if scratch is not None:
                shutil.rmtree(scratch, ignore_errors=True)


# ============================================================================
# Provisioner
# ============================================================================


Probe = Callable[[ServiceDefinition, ServiceHandle], bool]


class ServiceProvisioner:
    """Start, reuse and tear down the backing services of one run.

    Parameters
    ----------
    run_id : str
        Names the run network and every service instance.
    backend : ServiceBackend | None
        Defaults to ``DockerServiceBackend``.
    definitions : dict | None
        Service definitions keyed by kind; defaults to ``default_definitions()``.
    readiness_timeout : float
        Seconds to wait for a service to become ready.
    probe_interval : float
        Seconds between readiness probes.
    probe : callable | None
        Replaces the built-in HTTP/exec probe.
    clock, sleep : callable
        Time source and sleeper used by the readiness loop.
    session : requests.Session | None
        HTTP session for probes.
    """

    def __init__(
        self,
        run_id: str,
        backend: Optional[ServiceBackend] = None,
        definitions: Optional[Mapping[ServiceKind, ServiceDefinition]] = None,
        readiness_timeout: float = DEFAULT_READINESS_TIMEOUT,
        probe_interval: float = DEFAULT_PROBE_INTERVAL,
        probe: Optional[Probe] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None,
        probe_request_timeout: float = 5.0,
    ):
        self.run_id = run_id
        self.network_name = f"shipgate-{run_id}"
        self.readiness_timeout = readiness_timeout
        self.probe_interval = probe_interval
        self.probe_request_timeout = probe_request_timeout
        self._backend = backend or DockerServiceBackend()
        self._definitions = dict(definitions or default_definitions())
        self._probe_fn = probe
        self._clock = clock
        self._sleep = sleep
        self._session = session
        self._handles: Dict[ServiceKind, ServiceHandle] = {}
        self._order: List[ServiceKind] = []
        self._network_created = False

    @property
    def handles(self) -> Mapping[ServiceKind, ServiceHandle]:
        return MappingProxyType(self._handles)

    # -- acquisition -------------------------------------------------------

    def acquire(self, kind: ServiceKind) -> ServiceHandle:
        """Return the ready handle for *kind*, starting it on first use.

        Raises
        ------
        ServiceUnavailable
            The service (or one it requires) did not become ready in time,
            or failed earlier in this run.
        ConfigurationError
            No definition exists for *kind*.
        """
        handle = self._handles.get(kind)
        if handle is not None:
            if handle.ready:
                logger.debug("Reusing %s service at %s", kind.value, handle.endpoint)
                return handle
            raise ServiceUnavailable(
                f"Service '{kind.value}' already failed in this run "
                f"(state: {handle.state.value})",
                service_kind=kind.value,
            )

        definition = self._definitions.get(kind)
        if definition is None:
            raise ConfigurationError(f"No service definition for '{kind.value}'")

        for dependency in definition.requires:
            self.acquire(dependency)

        self._ensure_network()
        instance_name = f"shipgate-{self.run_id}-{kind.value.replace('_', '-')}"
        logger.info("Starting %s service (%s)", kind.value, definition.image)
        try:
            started = self._backend.start(definition, instance_name, self.network_name)
        except InfrastructureError as exc:
            raise ServiceUnavailable(
                f"Service '{kind.value}' could not be started: {exc}",
                service_kind=kind.value,
            ) from exc

        handle = ServiceHandle(
            kind=kind,
            endpoint=definition.endpoint(),
            host_endpoint=f"127.0.0.1:{started.host_port}",
            instance_id=started.instance_id,
        )
        # Registered before readiness so release_all() also removes failures
        self._handles[kind] = handle
        self._order.append(kind)

        self._wait_ready(definition, handle)
        if definition.kubeconfig_path:
            handle.attributes["kubeconfig"] = self._read_kubeconfig(definition, handle)

        handle.state = ReadinessState.READY
        logger.info("%s service ready at %s", kind.value, handle.endpoint)
        return handle

    def bind(self, handle: ServiceHandle, stage_name: str) -> str:
        """Expose *handle* to *stage_name* and return its endpoint."""
        if not handle.ready:
            raise ServiceUnavailable(
                f"Cannot bind '{handle.kind.value}' to '{stage_name}': "
                f"service is {handle.state.value}",
                service_kind=handle.kind.value,
                stage_name=stage_name,
            )
        if stage_name not in handle.bound_stages:
            handle.bound_stages.append(stage_name)
        return handle.endpoint

    # -- teardown ------------------------------------------------------------

    def release(self, handle: ServiceHandle) -> None:
        """Best-effort teardown.  Failures are logged, never raised."""
        try:
            self._backend.stop(handle.instance_id)
            logger.info("Released %s service", handle.kind.value)
        except Exception as exc:
            logger.warning("Failed to release %s service: %s", handle.kind.value, exc)
        finally:
            handle.state = ReadinessState.RELEASED
            if self._handles.get(handle.kind) is handle:
                del self._handles[handle.kind]
            if handle.kind in self._order:
                self._order.remove(handle.kind)

    def release_all(self) -> None:
        """Release every handle in reverse acquisition order."""
        for kind in list(reversed(self._order)):
            handle = self._handles.get(kind)
            if handle is not None:
                self.release(handle)
        if self._network_created:
            try:
                self._backend.remove_network(self.network_name)
            except Exception as exc:
                logger.warning("Failed to remove network %s: %s", self.network_name, exc)
            self._network_created = False

    # -- internals -------------------------------------------------------------

    def _ensure_network(self) -> None:
        if self._network_created:
            return
        try:
            self._backend.create_network(self.network_name)
        except InfrastructureError as exc:
            raise ServiceUnavailable(
                f"Could not create run network {self.network_name}: {exc}"
            ) from exc
        self._network_created = True

    def _remaining(self, started_at: float) -> float:
        return self.readiness_timeout - (self._clock() - started_at)

    def _deadline_stop(self, started_at: float) -> Callable[..., bool]:
        def stop(retry_state) -> bool:
            return self._remaining(started_at) <= 0

        return stop

    def _deadline_wait(self, started_at: float) -> Callable[..., float]:
        """Fixed probe interval, clamped so no wait ends past the deadline."""

        def wait(retry_state) -> float:
            return max(0.0, min(self.probe_interval, self._remaining(started_at)))

        return wait

    def _wait_ready(self, definition: ServiceDefinition, handle: ServiceHandle) -> None:
        started_at = self._clock()
        retrying = Retrying(
            stop=self._deadline_stop(started_at),
            wait=self._deadline_wait(started_at),
            retry=(
                retry_if_result(lambda ready: not ready)
                | retry_if_exception_type((requests.RequestException, InfrastructureError))
            ),
            sleep=self._sleep,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
        )
        try:
            retrying(self._probe, definition, handle, started_at)
        except RetryError as exc:
            handle.state = ReadinessState.FAILED
            raise ServiceUnavailable(
                f"Service '{definition.kind.value}' not ready within "
                f"{self.readiness_timeout:g}s",
                service_kind=definition.kind.value,
            ) from exc

    def _probe(
        self, definition: ServiceDefinition, handle: ServiceHandle, started_at: float
    ) -> bool:
        if self._probe_fn is not None:
            return self._probe_fn(definition, handle)
        if definition.probe == "exec":
            result = self._backend.exec(handle.instance_id, definition.probe_command)
            return result.exit_code == 0
        if self._session is None:
            self._session = requests.Session()
        # HTTP probes never outlive the readiness deadline
        timeout = min(self.probe_request_timeout, max(self._remaining(started_at), 0.1))
        response = self._session.get(
            f"http://{handle.host_endpoint}{definition.probe_path}",
            timeout=timeout,
        )
        return response.status_code < 500

    def _read_kubeconfig(self, definition: ServiceDefinition, handle: ServiceHandle) -> str:
        result = self._backend.exec(handle.instance_id, ("cat", definition.kubeconfig_path))
        if result.exit_code != 0:
            handle.state = ReadinessState.FAILED
            raise ServiceUnavailable(
                f"Could not read kubeconfig from '{definition.kind.value}': "
                f"{result.stderr.strip()}",
                service_kind=definition.kind.value,
            )
        return result.stdout.replace("127.0.0.1", definition.alias)
