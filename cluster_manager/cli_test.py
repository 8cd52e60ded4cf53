from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from cluster_manager.cli import app
from cluster_manager.config import RunOptions
from cluster_manager.models import BackendId

runner = CliRunner()


class TestCli:
    """Tests for command wiring and exit codes."""

    def test_help_lists_backends_and_batch_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for name in [*(b.value for b in BackendId), "test-all", "list", "check-deps"]:
            assert name in result.output

    @patch("cluster_manager.commands.backend_cmd.run_install")
    def test_install_options(self, mock_install):
        """Flags are passed through as RunOptions"""
        result = runner.invoke(app, [
            "kind", "install", "--registry-ip", "10.0.0.9", "--local-registry", "--image-tag", "9.9.9",
        ])

        assert result.exit_code == 0, result.output
        mock_install.assert_called_once_with(
            "kind",
            RunOptions(registry_ip="10.0.0.9", local_registry=True, image_tag="9.9.9"),
        )

    @patch("cluster_manager.commands.backend_cmd.run_test")
    def test_test_options(self, mock_test):
        result = runner.invoke(app, ["k3d", "test", "--skip-coverage", "--keep-cluster", "--timeout", "120"])

        assert result.exit_code == 0, result.output
        backend, options = mock_test.call_args.args
        assert backend == "k3d"
        assert options.skip_coverage and options.keep_cluster
        assert options.timeout == 120

    @patch("cluster_manager.commands.backend_cmd.run_uninstall")
    def test_uninstall_writes_log_file(self, mock_uninstall, tmp_path):
        log_file = tmp_path / "uninstall.log"

        result = runner.invoke(app, ["zuul", "uninstall", "--log-file", str(log_file)])

        assert result.exit_code == 0, result.output
        mock_uninstall.assert_called_once_with("zuul")
        assert log_file.exists()

    @patch("cluster_manager.commands.batch_cmd.run_test_all")
    def test_test_all_exit_code(self, mock_run_all, tmp_path):
        """test-all exits with the summary's exit code"""
        mock_run_all.return_value = MagicMock(exit_code=1)

        result = runner.invoke(app, ["test-all", "-b", "kind", "-b", "k3d", "--cool-down", "0",
                                     "--log-dir", str(tmp_path)])

        assert result.exit_code == 1
        options, backends = mock_run_all.call_args.args
        assert backends == ["kind", "k3d"]
        assert options.cool_down == 0
        assert mock_run_all.call_args.kwargs["log_dir"] == tmp_path

    @patch("cluster_manager.commands.batch_cmd.check_deps", return_value=["helm"])
    def test_check_deps_fails_when_tools_missing(self, mock_check):
        result = runner.invoke(app, ["check-deps", "--no-install"])

        assert result.exit_code == 1
        mock_check.assert_called_once_with(False)
