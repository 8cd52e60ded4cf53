from unittest.mock import MagicMock, patch

import pytest
import sh

from cluster_manager.config import RegistrySettings
from cluster_manager.errors import ConvergenceTimeoutError, ExternalToolError
from cluster_manager.models import RegistryMode, RegistrySpec
from cluster_manager.poller import PollResult
from cluster_manager.registry import RegistryReconciler, resolve_registry_spec

SPEC = RegistrySpec("10.0.0.5:5000")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("RF_LOCAL_REGISTRY", raising=False)
    monkeypatch.delenv("RF_USE_LOCAL_REGISTRY", raising=False)
    monkeypatch.delenv("RF_REGISTRY_PORT", raising=False)


class TestResolveRegistrySpec:
    """Tests for registry address and mode resolution."""

    def test_env_override_beats_flag(self, monkeypatch):
        """RF_LOCAL_REGISTRY wins over --registry-ip"""
        monkeypatch.setenv("RF_LOCAL_REGISTRY", "10.0.0.5")
        spec = resolve_registry_spec(RegistrySettings(), registry_ip="10.9.9.9")
        assert spec.address == "10.0.0.5:5000"
        assert spec.mode is RegistryMode.REMOTE

    def test_flag_used_without_env(self):
        spec = resolve_registry_spec(RegistrySettings(), registry_ip="10.9.9.9", local=True)
        assert spec == RegistrySpec("10.9.9.9:5000", RegistryMode.LOCAL)

    def test_explicit_port_kept(self):
        """An address that already carries a port is used unchanged"""
        spec = resolve_registry_spec(RegistrySettings(), registry_ip="registry.lan:5001")
        assert spec.address == "registry.lan:5001"
        assert spec.port == 5001

    def test_env_toggle_selects_local_mode(self, monkeypatch):
        monkeypatch.setenv("RF_USE_LOCAL_REGISTRY", "true")
        spec = resolve_registry_spec(RegistrySettings(), registry_ip="10.9.9.9")
        assert spec.mode is RegistryMode.LOCAL

    @patch("cluster_manager.registry.detect_host_ip", return_value="192.168.1.20")
    def test_detected_ip_fallback(self, mock_detect):
        """Without overrides the detected host IP is used"""
        spec = resolve_registry_spec(RegistrySettings())
        mock_detect.assert_called_once_with(None)
        assert spec.address == "192.168.1.20:5000"


def _ready(ready=True):
    return PollResult(ready=ready, attempts=1, elapsed=0.0, description="registry", timeout=1)


class TestRegistryReconciler:
    """Tests for the reconciler's step ordering and failure policy."""

    @patch("cluster_manager.registry.wait_until", return_value=_ready())
    def test_steps_run_in_order(self, _wait):
        """Provision, trust, reload, cluster wait, then verify"""
        adapter = MagicMock()
        adapter.reload_runtime.return_value = True
        adapter.verify_registry_trust.return_value = True

        assert RegistryReconciler(cluster_timeout=7).reconcile(adapter, SPEC) is True

        names = [c[0] for c in adapter.method_calls]
        assert names == [
            "ensure_registry",
            "write_trust_config",
            "reload_runtime",
            "wait_for_cluster",
            "verify_registry_trust",
        ]
        adapter.wait_for_cluster.assert_called_once_with(7)

    @patch("cluster_manager.registry.wait_until", return_value=_ready())
    def test_no_cluster_wait_without_reload(self, _wait):
        adapter = MagicMock()
        adapter.reload_runtime.return_value = False
        adapter.verify_registry_trust.return_value = True

        RegistryReconciler().reconcile(adapter, SPEC)

        adapter.wait_for_cluster.assert_not_called()

    @patch("cluster_manager.registry.wait_until", return_value=_ready())
    def test_round_trip_failure_is_a_warning(self, _wait):
        """A raising round trip is reported and returns False without aborting"""
        adapter = MagicMock()
        adapter.reload_runtime.return_value = False
        adapter.verify_registry_trust.side_effect = RuntimeError("push refused")

        assert RegistryReconciler().reconcile(adapter, SPEC) is False

    @patch("cluster_manager.registry.wait_until", return_value=_ready())
    def test_provisioning_failure_is_fatal(self, _wait):
        """A failing provisioning command becomes ExternalToolError"""
        adapter = MagicMock()
        adapter.ensure_registry.side_effect = sh.ErrorReturnCode_1("microk8s enable registry", b"", b"boom")

        with pytest.raises(ExternalToolError) as exc_info:
            RegistryReconciler().reconcile(adapter, SPEC)

        assert exc_info.value.exit_code == 1
        adapter.write_trust_config.assert_not_called()

    @patch("cluster_manager.registry.wait_until", return_value=_ready(False))
    def test_unreachable_registry_times_out(self, _wait):
        """Trust is never written for a registry that did not come up"""
        adapter = MagicMock()

        with pytest.raises(ConvergenceTimeoutError):
            RegistryReconciler(timeout=1).reconcile(adapter, SPEC)

        adapter.write_trust_config.assert_not_called()
