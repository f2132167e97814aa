"""
Tests for the ephemeral service provisioner.

Covers per-kind reuse, dependency ordering, readiness deadlines,
best-effort teardown in reverse order and endpoint binding.
"""

from unittest.mock import MagicMock

import pytest
import requests

from shipgate.exceptions import ConfigurationError, ServiceUnavailable
from shipgate.pipeline.protocol import ServiceKind
from shipgate.pipeline.services import (
    ReadinessState,
    ServiceProvisioner,
    default_definitions,
)


class TestAcquire:
    def test_acquire_twice_returns_same_handle(self, make_provisioner, fake_backend):
        provisioner = make_provisioner()
        first = provisioner.acquire(ServiceKind.REGISTRY)
        second = provisioner.acquire(ServiceKind.REGISTRY)

        assert first is second
        assert first.endpoint == second.endpoint == "registry:5000"
        assert fake_backend.started == [ServiceKind.REGISTRY]

    def test_handle_is_ready_with_host_endpoint(self, make_provisioner):
        handle = make_provisioner().acquire(ServiceKind.REGISTRY)
        assert handle.ready
        assert handle.state is ReadinessState.READY
        assert handle.host_endpoint == "127.0.0.1:40001"
        assert handle.instance_id == "id-registry"

    def test_cluster_starts_registry_first(self, make_provisioner, fake_backend):
        provisioner = make_provisioner()
        provisioner.acquire(ServiceKind.CLUSTER)
        assert fake_backend.started == [ServiceKind.REGISTRY, ServiceKind.CLUSTER]

    def test_cluster_kubeconfig_points_at_network_alias(self, make_provisioner):
        handle = make_provisioner().acquire(ServiceKind.CLUSTER)
        assert "https://k3s:6443" in handle.attributes["kubeconfig"]
        assert "127.0.0.1" not in handle.attributes["kubeconfig"]

    def test_instances_and_network_are_named_by_run(self, make_provisioner, fake_backend):
        provisioner = make_provisioner(run_id="abc123")
        provisioner.acquire(ServiceKind.DATA_STORE)
        provisioner.acquire(ServiceKind.REGISTRY)

        assert provisioner.network_name == "shipgate-abc123"
        assert fake_backend.networks_created == ["shipgate-abc123"]
        assert fake_backend.instance_names == [
            "shipgate-abc123-data-store",
            "shipgate-abc123-registry",
        ]

    def test_independent_runs_do_not_share_handles(self, make_provisioner, fake_backend):
        one = make_provisioner(run_id="one").acquire(ServiceKind.REGISTRY)
        two = make_provisioner(run_id="two").acquire(ServiceKind.REGISTRY)
        assert one is not two
        assert len(fake_backend.started) == 2

    def test_unknown_kind_is_configuration_error(self, fake_backend, fake_clock):
        provisioner = ServiceProvisioner(
            run_id="r",
            backend=fake_backend,
            definitions={ServiceKind.REGISTRY: default_definitions()[ServiceKind.REGISTRY]},
            probe=lambda d, h: True,
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )
        with pytest.raises(ConfigurationError):
            provisioner.acquire(ServiceKind.DATA_STORE)

    def test_start_failure_is_service_unavailable(self, make_provisioner, fake_backend):
        fake_backend.fail_start.add(ServiceKind.REGISTRY)
        with pytest.raises(ServiceUnavailable) as exc_info:
            make_provisioner().acquire(ServiceKind.REGISTRY)
        assert exc_info.value.service_kind == "registry"


class TestReadiness:
    def test_timeout_raises_service_unavailable(self, make_provisioner, fake_clock):
        provisioner = make_provisioner(not_ready=[ServiceKind.CLUSTER])

        with pytest.raises(ServiceUnavailable) as exc_info:
            provisioner.acquire(ServiceKind.CLUSTER)

        assert exc_info.value.service_kind == "cluster"
        assert "60s" in str(exc_info.value)
        assert fake_clock.now >= 60.0
        assert set(fake_clock.sleeps) == {2.0}

    def test_failed_service_is_not_restarted(self, make_provisioner, fake_backend):
        provisioner = make_provisioner(not_ready=[ServiceKind.DATA_STORE])
        with pytest.raises(ServiceUnavailable):
            provisioner.acquire(ServiceKind.DATA_STORE)
        with pytest.raises(ServiceUnavailable, match="already failed"):
            provisioner.acquire(ServiceKind.DATA_STORE)

        assert fake_backend.started == [ServiceKind.DATA_STORE]
        assert provisioner.handles[ServiceKind.DATA_STORE].state is ReadinessState.FAILED

    def test_custom_timeout_respected(self, make_provisioner, fake_clock):
        provisioner = make_provisioner(
            not_ready=[ServiceKind.REGISTRY], readiness_timeout=10.0, probe_interval=1.0
        )
        with pytest.raises(ServiceUnavailable):
            provisioner.acquire(ServiceKind.REGISTRY)
        assert 10.0 <= fake_clock.now < 12.0

    def test_last_wait_clamped_to_deadline(self, make_provisioner, fake_clock):
        probe_times = []

        def never_ready(definition, handle):
            probe_times.append(fake_clock.now)
            return False

        provisioner = make_provisioner(
            probe=never_ready, readiness_timeout=10.0, probe_interval=7.0
        )
        with pytest.raises(ServiceUnavailable):
            provisioner.acquire(ServiceKind.REGISTRY)

        assert fake_clock.sleeps == [7.0, 3.0]
        assert probe_times == [0.0, 7.0, 10.0]
        assert fake_clock.now == 10.0

    def test_http_probe_timeout_capped_by_deadline(self, fake_backend, fake_clock):
        session = MagicMock()
        session.get.return_value.status_code = 503
        provisioner = ServiceProvisioner(
            run_id="r",
            backend=fake_backend,
            clock=fake_clock,
            sleep=fake_clock.sleep,
            session=session,
            readiness_timeout=6.0,
            probe_interval=4.0,
            probe_request_timeout=5.0,
        )
        with pytest.raises(ServiceUnavailable):
            provisioner.acquire(ServiceKind.REGISTRY)

        timeouts = [c.kwargs["timeout"] for c in session.get.call_args_list]
        assert timeouts[0] == 5.0
        assert timeouts[1] == 2.0
        assert all(t <= 5.0 for t in timeouts)

    def test_probe_errors_are_retried(self, make_provisioner, fake_clock):
        attempts = []

        def flaky(definition, handle):
            attempts.append(1)
            if len(attempts) < 3:
                raise requests.ConnectionError("connection refused")
            return True

        handle = make_provisioner(probe=flaky).acquire(ServiceKind.REGISTRY)
        assert handle.ready
        assert len(attempts) == 3
        assert fake_clock.sleeps == [2.0, 2.0]

    def test_http_probe_uses_host_endpoint(self, fake_backend, fake_clock):
        session = MagicMock()
        session.get.return_value.status_code = 200
        provisioner = ServiceProvisioner(
            run_id="r",
            backend=fake_backend,
            clock=fake_clock,
            sleep=fake_clock.sleep,
            session=session,
        )
        provisioner.acquire(ServiceKind.REGISTRY)
        url = session.get.call_args[0][0]
        assert url == "http://127.0.0.1:40001/v2/"

    def test_exec_probe_for_cluster(self, fake_backend, fake_clock):
        session = MagicMock()
        session.get.return_value.status_code = 200
        provisioner = ServiceProvisioner(
            run_id="r",
            backend=fake_backend,
            clock=fake_clock,
            sleep=fake_clock.sleep,
            session=session,
        )
        provisioner.acquire(ServiceKind.CLUSTER)
        commands = [command for _, command in fake_backend.exec_calls]
        assert ("kubectl", "get", "--raw=/readyz") in commands


class TestBind:
    def test_bind_records_stage(self, make_provisioner):
        provisioner = make_provisioner()
        handle = provisioner.acquire(ServiceKind.REGISTRY)
        assert provisioner.bind(handle, "publish") == "registry:5000"
        provisioner.bind(handle, "sign")
        provisioner.bind(handle, "sign")
        assert handle.bound_stages == ["publish", "sign"]

    def test_bind_failed_handle_raises(self, make_provisioner):
        provisioner = make_provisioner(not_ready=[ServiceKind.REGISTRY])
        with pytest.raises(ServiceUnavailable):
            provisioner.acquire(ServiceKind.REGISTRY)
        handle = provisioner.handles[ServiceKind.REGISTRY]
        with pytest.raises(ServiceUnavailable):
            provisioner.bind(handle, "publish")


class TestRelease:
    def test_release_all_in_reverse_order(self, make_provisioner, fake_backend):
        provisioner = make_provisioner(run_id="r9")
        provisioner.acquire(ServiceKind.DATA_STORE)
        provisioner.acquire(ServiceKind.CLUSTER)

        provisioner.release_all()

        assert fake_backend.stopped == ["id-cluster", "id-registry", "id-data_store"]
        assert fake_backend.networks_removed == ["shipgate-r9"]
        assert dict(provisioner.handles) == {}

    def test_release_marks_handle_released(self, make_provisioner):
        provisioner = make_provisioner()
        handle = provisioner.acquire(ServiceKind.REGISTRY)
        provisioner.release(handle)
        assert handle.state is ReadinessState.RELEASED
        assert ServiceKind.REGISTRY not in provisioner.handles

    def test_release_failure_is_best_effort(self, make_provisioner, fake_backend):
        provisioner = make_provisioner()
        provisioner.acquire(ServiceKind.REGISTRY)
        provisioner.acquire(ServiceKind.DATA_STORE)
        fake_backend.fail_stop.add("id-data_store")

        provisioner.release_all()

        assert fake_backend.stopped == ["id-data_store", "id-registry"]
        assert dict(provisioner.handles) == {}

    def test_failed_service_is_still_released(self, make_provisioner, fake_backend):
        provisioner = make_provisioner(not_ready=[ServiceKind.CLUSTER])
        with pytest.raises(ServiceUnavailable):
            provisioner.acquire(ServiceKind.CLUSTER)
        provisioner.release_all()
        assert fake_backend.stopped == ["id-cluster", "id-registry"]

    def test_release_all_without_services_is_noop(self, make_provisioner, fake_backend):
        make_provisioner().release_all()
        assert fake_backend.stopped == []
        assert fake_backend.networks_removed == []

    def test_release_all_twice(self, make_provisioner, fake_backend):
        provisioner = make_provisioner()
        provisioner.acquire(ServiceKind.REGISTRY)
        provisioner.release_all()
        provisioner.release_all()
        assert fake_backend.stopped == ["id-registry"]
