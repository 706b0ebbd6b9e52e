"""
Tests for command-line config resolution
"""

from pathlib import Path

from voltassist.main import COMMANDS, _resolve_config_path


class TestResolveConfigPath:
    """Test --config, VOLTASSIST_CONFIG and default precedence"""

    def test_cli_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VOLTASSIST_CONFIG", str(tmp_path / "env.yaml"))

        assert _resolve_config_path(str(tmp_path / "cli.yaml")) == (tmp_path / "cli.yaml").resolve()

    def test_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VOLTASSIST_CONFIG", str(tmp_path / "env.yaml"))

        assert _resolve_config_path(None) == (tmp_path / "env.yaml").resolve()

    def test_default_project_root(self, monkeypatch):
        monkeypatch.delenv("VOLTASSIST_CONFIG", raising=False)

        path = _resolve_config_path(None)

        assert path.name == "config.yaml"
        assert path.parent == Path(__file__).resolve().parent


def test_commands():
    assert sorted(COMMANDS) == ["plan", "run", "status", "tick"]
