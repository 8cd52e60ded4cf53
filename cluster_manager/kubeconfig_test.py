from cluster_manager.kubeconfig import KubeconfigHandle

USER_CONFIG = b"apiVersion: v1\nkind: Config\ncurrent-context: prod\n"


class TestKubeconfigHandle:
    """Tests for kubeconfig backup on acquire and restore on release."""

    def test_round_trip_is_byte_identical(self, tmp_path):
        """install then uninstall leaves the user's kubeconfig byte-identical"""
        path = tmp_path / ".kube" / "config"
        path.parent.mkdir()
        path.write_bytes(USER_CONFIG)
        handle = KubeconfigHandle(path)

        handle.acquire()
        handle.write("apiVersion: v1\nkind: Config\ncurrent-context: kind-kind\n")
        assert path.read_bytes() != USER_CONFIG

        handle.release()

        assert path.read_bytes() == USER_CONFIG
        assert not handle.backup_path.exists()
        assert not handle.checked_out

    def test_absent_config_stays_absent(self, tmp_path):
        """When there was no kubeconfig, release removes the generated one"""
        path = tmp_path / "config"
        handle = KubeconfigHandle(path)

        handle.acquire()
        assert handle.checked_out
        handle.write("generated")
        handle.release()

        assert not path.exists()
        assert not handle.absent_marker.exists()

    def test_second_acquire_keeps_first_backup(self, tmp_path):
        """Re-acquiring does not back up a generated config over the user's"""
        path = tmp_path / "config"
        path.write_bytes(USER_CONFIG)
        handle = KubeconfigHandle(path)

        handle.acquire()
        handle.write("generated by first install")
        handle.acquire()
        handle.release()

        assert path.read_bytes() == USER_CONFIG

    def test_release_without_acquire_is_safe(self, tmp_path):
        """Repeated uninstalls converge without touching an untracked config"""
        path = tmp_path / "config"
        path.write_bytes(USER_CONFIG)
        handle = KubeconfigHandle(path)

        handle.release()
        handle.release()

        assert path.read_bytes() == USER_CONFIG

    def test_write_sets_private_mode(self, tmp_path):
        """Generated kubeconfigs are readable only by the owner"""
        handle = KubeconfigHandle(tmp_path / "config")
        handle.write(b"data")
        assert (handle.path.stat().st_mode & 0o777) == 0o600

    def test_copy_from(self, tmp_path):
        """copy_from installs a kubeconfig generated elsewhere"""
        source = tmp_path / "k3s.yaml"
        source.write_text("k3s config")
        handle = KubeconfigHandle(tmp_path / "config")

        handle.copy_from(source)

        assert handle.path.read_text() == "k3s config"
