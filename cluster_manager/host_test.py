from unittest.mock import patch

import pytest
import sh

from cluster_manager.errors import PreconditionError
from cluster_manager.host import detect_arch, detect_host_ip, parse_os_release


class TestDetectArch:
    """Tests for machine name to architecture mapping."""

    @pytest.mark.parametrize(
        "machine, expected",
        [
            ("x86_64", "amd64"),
            ("aarch64", "arm64"),
            ("armv7l", "arm"),
            ("i686", "386"),
            ("ppc64le", "ppc64le"),
            ("s390x", "s390x"),
        ],
    )
    def test_known_architectures(self, machine, expected):
        assert detect_arch(machine) == expected

    def test_unknown_architecture(self):
        """Unsupported machines are a precondition error"""
        with pytest.raises(PreconditionError, match="mips"):
            detect_arch("mips")


class TestParseOsRelease:
    """Tests for os-release parsing."""

    def test_ubuntu(self):
        info = parse_os_release('NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\n')
        assert (info.id, info.version_id, info.family) == ("ubuntu", "22.04", "debian")

    def test_rocky(self):
        info = parse_os_release('ID="rocky"\nVERSION_ID="9.3"\n')
        assert info.family == "rhel"

    def test_old_centos_rejected(self):
        """RHEL-family releases before 8 are rejected"""
        with pytest.raises(PreconditionError, match="too old"):
            parse_os_release('ID="centos"\nVERSION_ID="7"\n')

    def test_unsupported_distribution(self):
        with pytest.raises(PreconditionError, match="arch"):
            parse_os_release("ID=arch\n")


def _route():
    return "10.1.1.1"


def _hostname():
    return "10.2.2.2"


def _failing():
    raise sh.ErrorReturnCode_1("ip route get 1.1.1.1", b"", b"network unreachable")


def _loopback():
    return "127.0.0.1"


class TestDetectHostIp:
    """Tests for the advertise address precedence."""

    def test_override_wins(self):
        """An explicit address is used without probing"""
        with patch("cluster_manager.host.IP_PROBES", ()):
            assert detect_host_ip("10.0.0.5") == "10.0.0.5"

    def test_route_source_preferred(self):
        with patch("cluster_manager.host.IP_PROBES", (_route, _hostname)):
            assert detect_host_ip() == "10.1.1.1"

    def test_falls_through_failed_and_loopback_probes(self):
        """Failing probes and loopback answers are skipped"""
        with patch("cluster_manager.host.IP_PROBES", (_failing, _loopback, _hostname)):
            assert detect_host_ip() == "10.2.2.2"

    def test_nothing_found(self):
        with patch("cluster_manager.host.IP_PROBES", (_failing, _loopback)):
            with pytest.raises(PreconditionError, match="RF_LOCAL_REGISTRY"):
                detect_host_ip()
