"""Shared fakes for the pipeline tests (no docker required)."""

from typing import Dict, List, Sequence, Set

import pytest

from shipgate.exceptions import InfrastructureError
from shipgate.pipeline.protocol import ServiceKind
from shipgate.pipeline.services import ServiceDefinition, ServiceProvisioner, StartedService
from shipgate.pipeline.substrate import ExecResult

KUBECONFIG = """apiVersion: v1
clusters:
- cluster:
    server: https://127.0.0.1:6443
  name: default
"""


class FakeServiceBackend:
    """Records every lifecycle call instead of talking to docker."""

    def __init__(self):
        self.started: List[ServiceKind] = []
        self.instance_names: List[str] = []
        self.stopped: List[str] = []
        self.networks_created: List[str] = []
        self.networks_removed: List[str] = []
        self.fail_start: Set[ServiceKind] = set()
        self.fail_stop: Set[str] = set()
        self.exec_calls: List[tuple] = []
        self.probe_exit_code = 0

    def create_network(self, name: str) -> None:
        self.networks_created.append(name)

    def remove_network(self, name: str) -> None:
        self.networks_removed.append(name)

    def start(self, definition: ServiceDefinition, name: str, network: str) -> StartedService:
        if definition.kind in self.fail_start:
            raise InfrastructureError(f"cannot pull {definition.image}")
        self.started.append(definition.kind)
        self.instance_names.append(name)
        return StartedService(
            instance_id=f"id-{definition.kind.value}",
            host_port=40000 + len(self.started),
        )

    def exec(self, instance_id: str, command: Sequence[str]) -> ExecResult:
        self.exec_calls.append((instance_id, tuple(command)))
        if command and command[0] == "cat":
            return ExecResult(exit_code=0, stdout=KUBECONFIG)
        return ExecResult(exit_code=self.probe_exit_code)

    def stop(self, instance_id: str) -> None:
        self.stopped.append(instance_id)
        if instance_id in self.fail_stop:
            raise InfrastructureError(f"cannot remove {instance_id}")


class FakeClock:
    """Monotonic clock that only advances when ``sleep`` is called."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_backend():
    return FakeServiceBackend()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_provisioner(fake_backend, fake_clock):
    """Factory for a ``ServiceProvisioner`` wired to the fakes.

    ``not_ready`` lists service kinds whose readiness probe never passes.
    """

    def _make(run_id: str = "run1", not_ready: Sequence[ServiceKind] = (), **kwargs):
        blocked: Dict[ServiceKind, bool] = {kind: True for kind in not_ready}

        def probe(definition, handle):
            return not blocked.get(definition.kind, False)

        kwargs.setdefault("probe", probe)
        return ServiceProvisioner(
            run_id=run_id,
            backend=fake_backend,
            clock=fake_clock,
            sleep=fake_clock.sleep,
            **kwargs,
        )

    return _make
