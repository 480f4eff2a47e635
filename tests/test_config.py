"""Tests for vork.config: TOML loading, merging, and CLI integration."""

import argparse
import tomllib

import pytest

from vork.config import (
    _UNSET,
    AssistantConfig,
    apply_config_to_args,
    build_assistant_config,
    default_system_prompt,
    generate_config,
    global_config_dir,
    load_config,
)
from vork.errors import ConfigError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "server_url": _UNSET,
        "model": _UNSET,
        "temperature": _UNSET,
        "max_context_tokens": _UNSET,
        "approval_policy": _UNSET,
        "sandbox_mode": _UNSET,
        "base_dir": ".",
        "agent": _UNSET,
        "no_auto_agent": _UNSET,
        "no_warmup": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def no_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    return tmp_path / "xdg" / "vork"


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files(self, tmp_path, no_global):
        assert load_config(tmp_path) == {"config_dir": no_global}

    def test_global_dir_respects_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / "vork"

    def test_global_dir_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / ".config" / "vork"

    def test_global_only(self, tmp_path, no_global):
        _write_toml(no_global / "config.toml", 'model = "qwen"\n')
        assert load_config(tmp_path / "project")["model"] == "qwen"

    def test_project_overrides_global(self, tmp_path, no_global):
        _write_toml(no_global / "config.toml", "keep_recent = 4\ntemperature = 0.1\n")
        _write_toml(tmp_path / "vork.toml", "keep_recent = 6\n")
        result = load_config(tmp_path)
        assert result["keep_recent"] == 6
        assert result["temperature"] == 0.1

    def test_unknown_keys_warn(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "vork.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)


class TestValidation:
    def test_string_where_int_expected(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", 'keep_recent = "ten"\n')
        with pytest.raises(ConfigError, match="keep_recent.*expected int.*got str"):
            load_config(tmp_path)

    def test_bool_for_float(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", "temperature = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_int_for_float_field(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    @pytest.mark.parametrize("value", ["0", "0.0", "1.5", "-0.2"])
    def test_threshold_range(self, tmp_path, no_global, value):
        _write_toml(tmp_path / "vork.toml", f"compaction_threshold = {value}\n")
        with pytest.raises(ConfigError, match="compaction_threshold"):
            load_config(tmp_path)

    def test_threshold_one_is_valid(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", "compaction_threshold = 1.0\n")
        assert load_config(tmp_path)["compaction_threshold"] == 1.0

    def test_keep_recent_minimum(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", "keep_recent = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_unknown_policy(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", 'approval_policy = "sometimes"\n')
        with pytest.raises(ConfigError, match="approval policy"):
            load_config(tmp_path)

    def test_unknown_sandbox(self, tmp_path, no_global):
        _write_toml(tmp_path / "vork.toml", 'sandbox_mode = "off"\n')
        with pytest.raises(ConfigError, match="sandbox mode"):
            load_config(tmp_path)


# ===========================================================================
# Applying config to argparse
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"model": "qwen"})
        assert args.model == "qwen"

    def test_cli_beats_config(self):
        args = _make_args(model="cli-model")
        apply_config_to_args(args, {"model": "qwen"})
        assert args.model == "cli-model"

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.server_url == "http://localhost:8080"
        assert args.model == "local-model"
        assert args.temperature == 0.7
        assert args.max_context_tokens == 32768
        assert args.compaction_threshold == 0.75
        assert args.keep_recent == 10
        assert args.approval_policy == "auto"
        assert args.sandbox_mode == "workspace-write"
        assert args.command_timeout == 120
        assert args.quiet is False

    def test_inverted_keys(self):
        args = _make_args()
        apply_config_to_args(args, {"auto_agent": False, "warmup": True})
        assert args.no_auto_agent is True
        assert args.no_warmup is False

    def test_inverted_key_cli_wins(self):
        args = _make_args(no_warmup=True)
        apply_config_to_args(args, {"warmup": True})
        assert args.no_warmup is True

    def test_color_config(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_color_cli_overrides_config(self):
        args = _make_args(color=True)
        apply_config_to_args(args, {"color": False})
        assert args.color is True
        assert args.no_color is False

    def test_config_dir_not_copied(self, tmp_path):
        args = _make_args()
        apply_config_to_args(args, {"config_dir": tmp_path})
        assert not hasattr(args, "config_dir")


class TestBuildAssistantConfig:
    def test_defaults(self, tmp_path, no_global):
        args = _make_args(base_dir=str(tmp_path))
        apply_config_to_args(args, {})
        cfg = build_assistant_config(args)
        assert isinstance(cfg, AssistantConfig)
        assert cfg.base_dir == str(tmp_path.resolve())
        assert cfg.system_prompt == default_system_prompt()
        assert cfg.auto_agent is True
        assert cfg.warmup is True
        assert cfg.verbose is True
        assert cfg.config_dir == no_global

    def test_full_precedence(self, tmp_path, no_global):
        _write_toml(no_global / "config.toml", 'model = "global"\nkeep_recent = 3\n')
        _write_toml(tmp_path / "vork.toml", 'model = "project"\nquiet = true\n')
        args = _make_args(base_dir=str(tmp_path), model="cli")
        apply_config_to_args(args, load_config(tmp_path))
        cfg = build_assistant_config(args)
        assert cfg.model == "cli"
        assert cfg.keep_recent == 3
        assert cfg.verbose is False

    def test_cli_values_validated(self, tmp_path):
        args = _make_args(base_dir=str(tmp_path), max_context_tokens=0)
        apply_config_to_args(args, {})
        with pytest.raises(ConfigError, match="command line"):
            build_assistant_config(args)

    def test_custom_system_prompt(self, tmp_path):
        args = _make_args(base_dir=str(tmp_path))
        apply_config_to_args(args, {"system_prompt": "be brief"})
        assert build_assistant_config(args).system_prompt == "be brief"


class TestGenerateConfig:
    def test_template_is_valid_toml(self):
        lines = []
        for line in generate_config().splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped.split("  #")[0].strip())
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["server_url"] == "http://localhost:8080"
        assert parsed["keep_recent"] == 10

    def test_project_flag(self):
        assert "vork.toml" in generate_config(project=True)
        assert "config.toml" in generate_config(project=False)
