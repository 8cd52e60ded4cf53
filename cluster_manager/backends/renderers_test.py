from unittest.mock import MagicMock, patch

import pytest
import yaml

from cluster_manager.backends import BACKENDS, get_adapter, parse_backend
from cluster_manager.backends.common import (
    patch_containerd_config,
    registry_manifests,
    render_cri_mirror_patch,
    render_hosts_toml,
    render_registries_yaml,
)
from cluster_manager.backends.k0s import iptables_cleanup_commands, leftover_interfaces, render_k0s_config
from cluster_manager.backends.kind import render_kind_config
from cluster_manager.backends.kubeadm import KubeadmAdapter
from cluster_manager.backends.microk8s import registry_service_patches
from cluster_manager.backends.minikube import select_driver, start_args
from cluster_manager.backends.zuul import ZuulAdapter, isolation_manifests, render_kubeadm_config, render_sudoers
from cluster_manager.errors import PreconditionError
from cluster_manager.kubeconfig import KubeconfigHandle
from cluster_manager.models import DESCRIPTORS, BackendId, RegistrySpec

SPEC = RegistrySpec("10.0.0.5:5000")


class TestRegistry:
    """Tests for the backend registry."""

    def test_every_backend_has_an_adapter(self):
        assert set(BACKENDS) == set(BackendId)
        for backend, adapter_cls in BACKENDS.items():
            assert adapter_cls.descriptor is DESCRIPTORS[backend]

    def test_unknown_backend(self):
        """Unknown names list the supported backends"""
        with pytest.raises(PreconditionError, match="kubeadm, k0s"):
            get_adapter("openshift")

    def test_parse_backend(self):
        assert parse_backend("k3d") is BackendId.K3D


class TestTrustRenderers:
    """Tests for containerd and k3s trust file rendering."""

    def test_hosts_toml(self):
        text = render_hosts_toml("10.0.0.5:5000")
        assert text.startswith('server = "http://10.0.0.5:5000"\n')
        assert '[host."http://10.0.0.5:5000"]' in text
        assert "skip_verify = true" in text

    def test_registries_yaml(self):
        doc = yaml.safe_load(render_registries_yaml("10.0.0.5:5000"))
        assert doc["mirrors"]["10.0.0.5:5000"]["endpoint"] == ["http://10.0.0.5:5000"]
        assert doc["configs"]["10.0.0.5:5000"]["tls"]["insecure_skip_verify"] is True

    def test_cri_mirror_patch_version_header(self):
        text = render_cri_mirror_patch({"10.0.0.5:5000": "http://10.0.0.5:5000"}, version_header=True)
        assert text.startswith("version = 2\n")
        assert '.mirrors."10.0.0.5:5000"]' in text

    def test_patch_containerd_config(self):
        """The cgroup driver and certs.d path are switched on"""
        default = (
            '[plugins."io.containerd.grpc.v1.cri".registry]\n'
            '  config_path = ""\n'
            "SystemdCgroup = false\n"
        )
        patched = patch_containerd_config(default)
        assert 'config_path = "/etc/containerd/certs.d"' in patched
        assert "SystemdCgroup = true" in patched

    def test_registry_manifests_expose_advertise_ip(self):
        docs = registry_manifests(SPEC)
        assert [d["kind"] for d in docs] == ["Namespace", "PersistentVolumeClaim", "Deployment", "Service"]
        service = docs[-1]
        assert service["spec"]["externalIPs"] == ["10.0.0.5"]
        assert service["spec"]["ports"][0]["port"] == 5000


class TestKind:
    def test_config_trusts_ip_and_container_name(self):
        """The kind node trusts the registry by address and by container name"""
        config = yaml.safe_load(render_kind_config(SPEC))
        patch = config["containerdConfigPatches"][0]
        assert '"10.0.0.5:5000"' in patch
        assert '"kind-registry:5000"' in patch
        assert config["nodes"][0]["role"] == "control-plane"


class TestK0s:
    def test_config_adds_registry_host_to_sans(self):
        config = yaml.safe_load(render_k0s_config(SPEC))
        assert "10.0.0.5" in config["spec"]["api"]["sans"]

    def test_iptables_cleanup_order(self):
        """Matching rules are deleted before their chains are flushed and removed"""
        rules = "\n".join([
            "-P INPUT ACCEPT",
            "-N KUBE-SERVICES",
            "-N DOCKER",
            '-A INPUT -m comment --comment "kubernetes service portals" -j KUBE-SERVICES',
            "-A FORWARD -j DOCKER",
        ])
        commands = iptables_cleanup_commands("filter", rules)
        assert commands == [
            ["-t", "filter", "-D", "INPUT", "-m", "comment", "--comment", "kubernetes service portals",
             "-j", "KUBE-SERVICES"],
            ["-t", "filter", "-F", "KUBE-SERVICES"],
            ["-t", "filter", "-X", "KUBE-SERVICES"],
        ]

    def test_leftover_interfaces(self):
        output = "\n".join([
            "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536",
            "2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500",
            "5: kube-bridge: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500",
            "7: veth1a2b3c@if3: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1450",
        ])
        assert leftover_interfaces(output) == ["kube-bridge", "veth1a2b3c"]


class TestMicrok8s:
    def test_registry_service_patches(self):
        port_patch, ip_patch = registry_service_patches(SPEC)
        assert port_patch["spec"]["ports"][0]["nodePort"] == 30500
        assert ip_patch == {"spec": {"externalIPs": ["10.0.0.5"]}}


class TestMinikube:
    """Tests for driver selection and start arguments."""

    @pytest.mark.parametrize(
        "requested, root, docker_ok, expected",
        [
            ("auto", True, True, "none"),
            ("auto", False, True, "docker"),
            ("docker", True, False, "docker"),
        ],
    )
    def test_select_driver(self, requested, root, docker_ok, expected):
        assert select_driver(requested, root, docker_ok) == expected

    def test_no_driver_available(self):
        with pytest.raises(RuntimeError):
            select_driver("auto", False, False)

    def test_start_args(self):
        args = start_args("minikube", "none", SPEC, "4096", 2)
        assert "--insecure-registry=10.0.0.5:5000" in args
        assert "--container-runtime=containerd" in args
        assert args[-1] == "--extra-config=kubelet.cgroup-driver=systemd"

    def test_docker_driver_keeps_default_cgroup(self):
        assert not any("cgroup-driver" in a for a in start_args("minikube", "docker", SPEC, "4096", 2))


class TestZuul:
    """Tests for the Zuul node simulation renderers."""

    def test_sudoers_limits_commands(self):
        lines = render_sudoers().splitlines()
        assert lines[0].startswith("#")
        assert all(line.startswith("zuul ALL=(ALL) NOPASSWD: ") for line in lines[1:])

    def test_kubeadm_config_documents(self):
        docs = list(yaml.safe_load_all(render_kubeadm_config("1.29.0")))
        assert [d["kind"] for d in docs] == ["InitConfiguration", "ClusterConfiguration", "KubeletConfiguration"]
        assert docs[1]["kubernetesVersion"] == "v1.29.0"
        assert docs[2]["cgroupDriver"] == "systemd"

    def test_isolation_manifests(self):
        namespace, policy = isolation_manifests("zuul-jobs")
        labels = namespace["metadata"]["labels"]
        assert labels["name"] == "zuul-jobs"
        assert labels["pod-security.kubernetes.io/enforce"] == "restricted"
        assert policy["metadata"]["namespace"] == "zuul-jobs"
        assert policy["spec"]["policyTypes"] == ["Ingress", "Egress"]


class TestHostRegistry:
    """Tests for the in-cluster registry used by the host-package backends."""

    @pytest.mark.parametrize("adapter_cls", [KubeadmAdapter, ZuulAdapter])
    @patch("cluster_manager.registry.docker")
    @patch("cluster_manager.backends.kubeadm.install_local_path_storage")
    @patch("cluster_manager.backends.kubeadm.deploy_in_cluster_registry")
    def test_registry_runs_in_cluster(self, mock_deploy, mock_storage, mock_docker, adapter_cls, tmp_path):
        """Hosts that only install containerd never need a docker daemon for the registry"""
        adapter = adapter_cls(kubeconfig=KubeconfigHandle(tmp_path / "config"), reconciler=MagicMock())

        adapter.ensure_registry(SPEC)

        mock_storage.assert_called_once_with()
        mock_deploy.assert_called_once_with(SPEC)
        mock_docker.from_env.assert_not_called()
        assert "docker" not in adapter.required_commands
        assert not any("registry" in label.lower() for label, _ in adapter.teardown_steps())
