"""Tests for the k3sfnctl CLI."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from k3sfnctl import __version__
from k3sfnctl.cli import build_controller, create_parser, load_settings_from_args, main
from k3sfnctl.config import ControllerSettings
from k3sfnctl.exceptions import NotFoundError


class TestParser:
    """Tests for argument parsing."""

    def test_run_options(self):
        args = create_parser().parse_args([
            "--kubeconfig", "/tmp/kube", "run", "-n", "team", "--gc-interval", "30", "--service-monitors",
        ])

        assert args.command == "run"
        assert args.kubeconfig == "/tmp/kube"
        assert args.namespace == "team"
        assert args.gc_interval == 30.0
        assert args.service_monitors is True
        assert args.health_port is None

    def test_flags_override_settings(self, monkeypatch):
        monkeypatch.delenv("K3SFNCTL_NAMESPACE", raising=False)
        monkeypatch.delenv("K3SFNCTL_HEALTH_PORT", raising=False)
        args = create_parser().parse_args(["run", "-n", "team", "--health-port", "9090"])

        settings = load_settings_from_args(args)

        assert settings.namespace == "team"
        assert settings.health_port == 9090
        assert settings.max_retries == 5

    def test_unset_flags_keep_settings(self, monkeypatch):
        monkeypatch.setenv("K3SFNCTL_SERVICE_MONITORS", "true")
        args = create_parser().parse_args(["gc"])

        assert load_settings_from_args(args).service_monitors is True


class TestCommands:
    """Tests for command handlers."""

    def test_no_command(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_version(self, capsys):
        assert main(["version"]) == 0
        assert __version__ in capsys.readouterr().out

    def test_missing_settings_file(self, tmp_path, capsys):
        assert main(["--config", str(tmp_path / "missing.yaml"), "run"]) == 1
        assert "Error" in capsys.readouterr().err

    def test_runtimes_defaults(self, capsys):
        resources = MagicMock()
        resources.read_config_map.side_effect = NotFoundError("not found")

        with patch("k3sfnctl.cli.load_kube_config"), \
                patch("k3sfnctl.cli.ResourceClient", return_value=resources):
            assert main(["runtimes", "--json"]) == 0

        runtimes = json.loads(capsys.readouterr().out)
        assert "python3.12" in [r["runtime"] for r in runtimes]

    def test_gc_report(self, capsys):
        controller = MagicMock()
        controller.garbage_collect.return_value = {"default/live", "default/orphan"}
        controller.informer.get_by_key.side_effect = lambda key: (
            (None, False) if key == "default/orphan" else (object(), True)
        )

        with patch("k3sfnctl.cli.load_kube_config"), \
                patch("k3sfnctl.cli.build_controller", return_value=controller):
            assert main(["gc", "--json"]) == 0

        assert json.loads(capsys.readouterr().out) == [
            {"key": "default/live", "orphaned": False},
            {"key": "default/orphan", "orphaned": True},
        ]
        controller.informer.relist.assert_called_once()
        controller.garbage_collect.assert_called_once_with(enqueue=False)

    def test_gc_text(self, capsys):
        controller = MagicMock()
        controller.garbage_collect.return_value = {"team/a"}
        controller.informer.get_by_key.return_value = (None, False)

        with patch("k3sfnctl.cli.load_kube_config"), \
                patch("k3sfnctl.cli.build_controller", return_value=controller):
            assert main(["gc"]) == 0

        assert capsys.readouterr().out.strip() == "team/a (orphaned)"

    def test_run_wires_controller(self):
        controller = MagicMock()

        with patch("k3sfnctl.cli.load_kube_config"), \
                patch("k3sfnctl.cli.build_controller", return_value=controller), \
                patch("k3sfnctl.cli.start_health_server") as health, \
                patch("k3sfnctl.cli.signal.signal"):
            assert main(["run", "--health-port", "0"]) == 0

        health.assert_called_once_with(controller, 0)
        controller.run.assert_called_once()

    def test_run_logs_effective_settings(self, caplog):
        caplog.set_level(logging.DEBUG, logger="k3sfnctl.cli")

        with patch("k3sfnctl.cli.load_kube_config"), \
                patch("k3sfnctl.cli.build_controller", return_value=MagicMock()), \
                patch("k3sfnctl.cli.start_health_server"), \
                patch("k3sfnctl.cli.signal.signal"):
            assert main(["-v", "run", "-n", "team", "--health-port", "0"]) == 0

        assert "Effective settings" in caplog.text
        assert "'namespace': 'team'" in caplog.text


class TestBuildController:
    """Tests for controller wiring."""

    def test_informer_uses_request_timeout(self):
        settings = ControllerSettings(namespace="team", request_timeout=7.5)

        with patch("k3sfnctl.cli.client.ApiClient"), \
                patch("k3sfnctl.cli.client.CustomObjectsApi"), \
                patch("k3sfnctl.cli.ResourceClient"), \
                patch("k3sfnctl.cli.load_runtimes"):
            controller = build_controller(settings)

        assert controller.informer.namespace == "team"
        assert controller.informer.request_timeout == 7.5
        assert controller.settings is settings
