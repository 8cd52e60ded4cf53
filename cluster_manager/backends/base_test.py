from unittest.mock import MagicMock, patch

import docker
import pytest

from cluster_manager.backends.base import BackendAdapter
from cluster_manager.errors import ConvergenceTimeoutError, PreconditionError
from cluster_manager.kubeconfig import KubeconfigHandle
from cluster_manager.models import (
    DESCRIPTORS,
    BackendId,
    ClusterPhase,
    DeploymentPlan,
    RegistrySpec,
    RuntimeCredentials,
)
from cluster_manager.registry import remove_registry_container

SPEC = RegistrySpec("10.0.0.5:5000")
USER_CONFIG = b"apiVersion: v1\nkind: Config\ncurrent-context: prod\n"


class FakeAdapter(BackendAdapter):
    """In-memory backend recording which hooks ran"""

    descriptor = DESCRIPTORS[BackendId.KIND]
    required_commands = ()

    def __init__(self, *args, installed=False, running=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.installed = installed
        self.running = running
        self.calls = []
        self.fail_provision = None

    def is_installed(self):
        return self.installed

    def is_running(self):
        return self.running

    def provision(self, spec):
        self.calls.append("provision")
        if self.fail_provision:
            raise self.fail_provision
        self.installed = True
        self.running = True

    def fetch_kubeconfig(self):
        self.calls.append("fetch_kubeconfig")
        self.kubeconfig.write("apiVersion: v1\nkind: Config\ncurrent-context: kind-kind\n")

    def wait_for_cluster(self, timeout):
        self.calls.append("wait_for_cluster")

    def ensure_registry(self, spec):
        self.calls.append("ensure_registry")

    def write_trust_config(self, spec):
        self.calls.append("write_trust_config")

    def teardown_steps(self):
        def _delete():
            self.calls.append("delete")
            self.installed = False
            self.running = False

        def _broken():
            self.calls.append("broken")
            raise RuntimeError("leftover mount busy")

        return [("Deleting cluster", _delete), ("Removing leftovers", _broken)]


@pytest.fixture
def kubeconfig(tmp_path):
    path = tmp_path / ".kube" / "config"
    path.parent.mkdir()
    path.write_bytes(USER_CONFIG)
    return KubeconfigHandle(path)


@pytest.fixture
def reconciler():
    return MagicMock()


class TestInstall:
    """Tests for the install lifecycle rules."""

    def test_fresh_install_reaches_running(self, kubeconfig, reconciler):
        """Provision, kubeconfig, readiness and registry reconcile all run"""
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)

        state = adapter.install(SPEC)

        assert state.phase is ClusterPhase.RUNNING
        assert state.registry_address == "10.0.0.5:5000"
        assert adapter.calls == ["provision", "fetch_kubeconfig", "wait_for_cluster"]
        reconciler.reconcile.assert_called_once_with(adapter, SPEC)
        assert kubeconfig.backup_path.read_bytes() == USER_CONFIG

    def test_install_is_idempotent(self, kubeconfig, reconciler):
        """A second install on a running cluster changes nothing"""
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)

        adapter.install(SPEC)
        state = adapter.install(SPEC)

        assert state.phase is ClusterPhase.RUNNING
        assert adapter.calls.count("provision") == 1
        assert reconciler.reconcile.call_count == 1

    def test_degraded_cluster_is_cleaned_first(self, kubeconfig, reconciler):
        """Leftovers of a failed attempt are force-cleaned before provisioning"""
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler, installed=True, running=False)

        state = adapter.install(SPEC)

        assert state.phase is ClusterPhase.RUNNING
        assert adapter.calls[:3] == ["delete", "broken", "provision"]

    def test_failure_leaves_degraded(self, kubeconfig, reconciler):
        """A failing step marks the cluster Degraded and re-raises"""
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)
        reconciler.reconcile.side_effect = ConvergenceTimeoutError("registry", 1)

        with pytest.raises(ConvergenceTimeoutError):
            adapter.install(SPEC)

        assert adapter.state.phase is ClusterPhase.DEGRADED

    def test_missing_tool_fails_before_mutation(self, kubeconfig, reconciler):
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)
        adapter.required_commands = ("kind",)

        with patch("cluster_manager.backends.base.require_command",
                   side_effect=PreconditionError("kind is not installed")):
            with pytest.raises(PreconditionError):
                adapter.install(SPEC)

        assert adapter.calls == []
        assert kubeconfig.path.read_bytes() == USER_CONFIG

    def test_root_required(self, kubeconfig, reconciler):
        """Backends that mutate system paths refuse to run unprivileged"""
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)
        adapter.descriptor = DESCRIPTORS[BackendId.K3S]

        with patch("cluster_manager.backends.base.is_root", return_value=False):
            with pytest.raises(PreconditionError, match="root"):
                adapter.install(SPEC)


class TestUninstall:
    """Tests for best-effort teardown and kubeconfig restore."""

    def test_restores_kubeconfig_despite_failing_steps(self, kubeconfig, reconciler):
        """install then uninstall leaves the user's kubeconfig byte-identical"""
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)
        adapter.install(SPEC)
        adapter.running = False

        state = adapter.uninstall()

        assert state.phase is ClusterPhase.ABSENT
        assert state.registry_address is None
        assert "broken" in adapter.calls
        assert kubeconfig.path.read_bytes() == USER_CONFIG

    @patch("cluster_manager.registry.docker.from_env",
           side_effect=docker.errors.DockerException("Error while fetching server API version"))
    def test_docker_unavailable_does_not_stop_teardown(self, _from_env, kubeconfig, reconciler):
        """A registry removal step failing on a dead docker daemon is skipped like any other"""

        class DockerRegistryAdapter(FakeAdapter):
            def teardown_steps(self):
                first, last = super().teardown_steps()
                return [first, ("Removing registry container", lambda: remove_registry_container("kind-registry")), last]

        adapter = DockerRegistryAdapter(kubeconfig=kubeconfig, reconciler=reconciler, installed=True)

        state = adapter.uninstall()

        assert state.phase is ClusterPhase.ABSENT
        assert adapter.calls == ["delete", "broken"]
        assert kubeconfig.path.read_bytes() == USER_CONFIG

    def test_uninstall_twice_converges(self, kubeconfig, reconciler):
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)

        adapter.uninstall()
        adapter.uninstall()

        assert adapter.status().phase is ClusterPhase.ABSENT
        assert kubeconfig.path.read_bytes() == USER_CONFIG


class TestStatusAndDeploy:
    """Tests for status refresh and runtime deployment gating."""

    @pytest.mark.parametrize(
        "installed, running, phase",
        [
            (False, False, ClusterPhase.ABSENT),
            (True, True, ClusterPhase.RUNNING),
            (True, False, ClusterPhase.DEGRADED),
        ],
    )
    def test_status_phases(self, kubeconfig, reconciler, installed, running, phase):
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler, installed=installed, running=running)
        assert adapter.status().phase is phase

    @patch("cluster_manager.backends.base.execute_plan")
    def test_deploy_requires_running_cluster(self, mock_execute, kubeconfig, reconciler):
        """Deploying onto an absent cluster is a precondition error"""
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler)
        plan = DeploymentPlan(chart_ref="c", release="r", namespace="n")

        with pytest.raises(PreconditionError, match="not running"):
            adapter.deploy_runtime(plan, RuntimeCredentials("a", "b", "c"))

        mock_execute.assert_not_called()

    @patch("cluster_manager.backends.base.execute_plan")
    def test_deploy_executes_plan(self, mock_execute, kubeconfig, reconciler):
        adapter = FakeAdapter(kubeconfig=kubeconfig, reconciler=reconciler, installed=True, running=True)
        plan = DeploymentPlan(chart_ref="c", release="r", namespace="n")
        creds = RuntimeCredentials("a", "b", "c")

        adapter.deploy_runtime(plan, creds)

        mock_execute.assert_called_once_with(plan, creds, adapter.runtime_settings.pod_ready_timeout)
