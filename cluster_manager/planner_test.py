from unittest.mock import MagicMock, patch

import pytest
import sh

from cluster_manager.config import RegistrySettings, RuntimeSettings
from cluster_manager.errors import ExternalToolError, PreconditionError
from cluster_manager.models import (
    DESCRIPTORS,
    BackendId,
    DeploymentPlan,
    RegistryMode,
    RegistrySpec,
    RuntimeCredentials,
)
from cluster_manager.planner import build_plan, execute_plan, helm_args
from cluster_manager.registry import resolve_registry_spec

CREDS = RuntimeCredentials(access_id="id", secret_key="secret", root_url="https://rf.example.com")


@pytest.fixture
def runtime_settings(tmp_path):
    """Runtime settings whose pull-secret manifest exists on disk"""
    secret = tmp_path / "rapidfort-registry-secret.yaml"
    secret.write_text("apiVersion: v1\nkind: Secret\n")
    return RuntimeSettings(credentials_file=tmp_path / "credentials", registry_secret_file=secret)


class TestBuildPlan:
    """Tests for deployment plan construction."""

    def test_local_registry_scenario(self, monkeypatch, runtime_settings):
        """RF_LOCAL_REGISTRY=10.0.0.5, kind, --local-registry --image-tag 9.9.9"""
        monkeypatch.setenv("RF_LOCAL_REGISTRY", "10.0.0.5")
        monkeypatch.delenv("RF_USE_LOCAL_REGISTRY", raising=False)
        spec = resolve_registry_spec(RegistrySettings(), local=True)

        plan = build_plan(
            backend=DESCRIPTORS[BackendId.KIND],
            registry=spec,
            credentials=CREDS,
            settings=runtime_settings,
            image_tag="9.9.9",
        )

        assert dict(plan.value_overrides) == {
            "registry": "10.0.0.5:5000/rapidfort",
            "imageTag": "9.9.9",
            "imagePullPolicy": "Always",
        }
        assert plan.image_pull_secret_name is None
        assert plan.registry_secret_file is None
        assert plan.uses_local_registry

    def test_local_mode_without_tag_omits_image_tag(self, runtime_settings):
        """imageTag is only emitted when a tag is given"""
        plan = build_plan(
            backend=DESCRIPTORS[BackendId.K3S],
            registry=RegistrySpec("192.168.1.10:5000", RegistryMode.LOCAL),
            credentials=CREDS,
            settings=runtime_settings,
        )
        assert "imageTag" not in plan.value_overrides
        assert plan.value_overrides["imagePullPolicy"] == "Always"

    def test_remote_mode_attaches_pull_secret_when_manifest_exists(self, runtime_settings):
        """Remote mode keeps the chart registry and attaches the pull secret"""
        plan = build_plan(
            backend=DESCRIPTORS[BackendId.K0S],
            registry=RegistrySpec("192.168.1.10:5000"),
            credentials=CREDS,
            settings=runtime_settings,
            image_tag="ignored",
        )
        assert dict(plan.value_overrides) == {}
        assert plan.image_pull_secret_name == "rapidfort-registry-secret"
        assert plan.registry_secret_file == runtime_settings.registry_secret_file

    def test_remote_mode_without_manifest_has_no_secret(self, tmp_path):
        """No pull secret when the manifest does not exist"""
        settings = RuntimeSettings(registry_secret_file=tmp_path / "missing.yaml")
        plan = build_plan(
            backend=DESCRIPTORS[BackendId.KIND],
            registry=RegistrySpec("192.168.1.10:5000"),
            credentials=CREDS,
            settings=settings,
        )
        assert plan.image_pull_secret_name is None
        assert plan.registry_secret_file is None

    @pytest.mark.parametrize("backend", list(BackendId))
    @pytest.mark.parametrize("mode", list(RegistryMode))
    def test_registry_override_and_pull_secret_are_exclusive(self, backend, mode, runtime_settings):
        """No plan ever carries both a registry override and a pull secret"""
        plan = build_plan(
            backend=DESCRIPTORS[backend],
            registry=RegistrySpec("10.1.2.3:5000", mode),
            credentials=CREDS,
            settings=runtime_settings,
            image_tag="1.0",
        )
        assert not ("registry" in plan.value_overrides and plan.image_pull_secret_name)

    def test_base_values_follow_descriptor(self, runtime_settings):
        """Cluster name, caption, variant and profile come from the backend descriptor"""
        plan = build_plan(
            backend=DESCRIPTORS[BackendId.K3D],
            registry=RegistrySpec("10.1.2.3:5000"),
            credentials=CREDS,
            settings=runtime_settings,
        )
        assert plan.chart_values["ClusterName"] == "k3d"
        assert plan.chart_values["ClusterCaption"] == "k3d Cluster"
        assert plan.chart_values["variant"] == "k3s"
        assert plan.chart_values["profile.enabled"] == "true"
        assert plan.chart_values["scan.enabled"] == "true"
        assert plan.chart_values["rapidfort.credentialsSecret"] == "rfruntime-credentials"

    @pytest.mark.parametrize("missing", ["access_id", "secret_key", "root_url"])
    def test_incomplete_credentials_rejected(self, missing, runtime_settings):
        """Any empty credential field is a precondition error"""
        creds = RuntimeCredentials(**{**CREDS.__dict__, missing: ""})
        with pytest.raises(PreconditionError, match=missing):
            build_plan(
                backend=DESCRIPTORS[BackendId.KIND],
                registry=RegistrySpec("10.1.2.3:5000"),
                credentials=creds,
                settings=runtime_settings,
            )


class TestDeploymentPlan:
    """Tests for the DeploymentPlan value object."""

    def test_rejects_override_with_pull_secret(self):
        """Constructing a plan with both a registry override and a pull secret fails"""
        with pytest.raises(ValueError):
            DeploymentPlan(
                chart_ref="oci://example/chart",
                release="rel",
                namespace="ns",
                value_overrides={"registry": "10.0.0.5:5000/rapidfort"},
                image_pull_secret_name="secret",
            )

    def test_mappings_are_read_only(self):
        """Plan mappings cannot be mutated after construction"""
        plan = DeploymentPlan(chart_ref="c", release="r", namespace="n", value_overrides={"imageTag": "1"})
        with pytest.raises(TypeError):
            plan.value_overrides["imageTag"] = "2"


class TestHelmArgs:
    """Tests for rendering a plan into helm arguments."""

    def test_pull_secret_and_wait(self):
        """Pull secret is rendered as a list value, followed by --wait and the timeout"""
        plan = DeploymentPlan(
            chart_ref="oci://quay.io/rapidfort/runtime",
            release="rfruntime",
            namespace="rapidfort",
            chart_values={"ClusterName": "kind"},
            image_pull_secret_name="rapidfort-registry-secret",
        )
        args = helm_args(plan)

        assert args[:6] == ["upgrade", "--install", "rfruntime", "oci://quay.io/rapidfort/runtime",
                            "--namespace", "rapidfort"]
        assert "ClusterName=kind" in args
        assert "imagePullSecrets.names={rapidfort-registry-secret}" in args
        assert args[-2:] == ["--wait", "--timeout=5m"]


class TestExecutePlan:
    """Tests for plan execution against helm and kubectl."""

    def _plan(self):
        return DeploymentPlan(chart_ref="oci://example/chart", release="rfruntime", namespace="rapidfort")

    @pytest.mark.parametrize("missing", ["access_id", "secret_key", "root_url"])
    @patch("cluster_manager.planner.sh")
    def test_credential_gating_invokes_no_helm(self, mock_sh, missing):
        """Incomplete credentials fail before any helm invocation"""
        creds = RuntimeCredentials(**{**CREDS.__dict__, missing: ""})

        with pytest.raises(PreconditionError):
            execute_plan(self._plan(), creds, pod_ready_timeout=1)

        assert mock_sh.helm.call_count == 0
        assert mock_sh.kubectl.call_count == 0

    @patch("cluster_manager.planner.wait_until")
    @patch("cluster_manager.planner.describe", return_value="Events: ImagePullBackOff")
    @patch("cluster_manager.planner.ensure_namespace")
    @patch("cluster_manager.planner.require_command")
    @patch("cluster_manager.planner.sh")
    def test_helm_failure_carries_diagnostics(self, mock_sh, _require, _ns, mock_describe, mock_wait):
        """A helm failure raises ExternalToolError with the pod descriptions attached"""
        mock_sh.ErrorReturnCode = sh.ErrorReturnCode
        mock_sh.helm.side_effect = sh.ErrorReturnCode_1("helm upgrade --install", b"", b"timed out")

        with pytest.raises(ExternalToolError) as exc_info:
            execute_plan(self._plan(), CREDS, pod_ready_timeout=1)

        assert exc_info.value.exit_code == 1
        assert "timed out" in exc_info.value.output
        assert exc_info.value.diagnostics == "Events: ImagePullBackOff"
        mock_describe.assert_called_once_with("pods", "rapidfort")
        mock_wait.assert_not_called()

    @patch("cluster_manager.planner.wait_until")
    @patch("cluster_manager.planner.ensure_namespace")
    @patch("cluster_manager.planner.require_command")
    @patch("cluster_manager.planner.sh")
    def test_success_waits_for_runtime_pods(self, mock_sh, _require, mock_ns, mock_wait):
        """A successful helm run is followed by a wait on the runtime pods"""
        mock_sh.ErrorReturnCode = sh.ErrorReturnCode
        mock_wait.return_value = MagicMock(ready=True)

        execute_plan(self._plan(), CREDS, pod_ready_timeout=42)

        mock_ns.assert_called_once_with("rapidfort")
        mock_sh.helm.assert_called_once()
        assert mock_wait.call_args.kwargs["timeout"] == 42
        mock_wait.return_value.raise_for_timeout.assert_called_once()
