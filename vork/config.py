"""Configuration file loading and merging for vork.

Reads TOML config from ~/.config/vork/config.toml (global) and
<base_dir>/vork.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .approval import validate_policy, validate_sandbox_mode
from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "server_url": str,
    "model": str,
    "temperature": (int, float),
    "max_context_tokens": int,
    "compaction_threshold": (int, float),
    "keep_recent": int,
    "approval_policy": str,
    "sandbox_mode": str,
    "request_timeout": (int, float),
    "command_timeout": int,
    "web_search_url": str,
    "system_prompt": str,
    "agent": str,
    "auto_agent": bool,
    "warmup": bool,
    "color": bool,
    "quiet": bool,
}

# Config key -> argparse dest, for booleans the CLI exposes as --no-* flags
_INVERTED_KEYS: dict[str, str] = {
    "auto_agent": "no_auto_agent",
    "warmup": "no_warmup",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "server_url": "http://localhost:8080",
    "model": "local-model",
    "temperature": 0.7,
    "max_context_tokens": 32768,
    "compaction_threshold": 0.75,
    "keep_recent": 10,
    "approval_policy": "auto",
    "sandbox_mode": "workspace-write",
    "request_timeout": 600,
    "command_timeout": 120,
    "web_search_url": "https://html.duckduckgo.com/html/",
    "system_prompt": None,
    "agent": None,
    "no_auto_agent": False,
    "no_warmup": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


@dataclass
class AssistantConfig:
    """Resolved settings handed to the loop, the gate and the session."""

    server_url: str = "http://localhost:8080"
    model: str = "local-model"
    temperature: float = 0.7
    max_context_tokens: int = 32768
    compaction_threshold: float = 0.75
    keep_recent: int = 10
    approval_policy: str = "auto"
    sandbox_mode: str = "workspace-write"
    request_timeout: float = 600
    command_timeout: int = 120
    web_search_url: str = "https://html.duckduckgo.com/html/"
    system_prompt: str = ""
    agent: str | None = None
    auto_agent: bool = True
    warmup: bool = True
    base_dir: str = "."
    config_dir: Path | None = None
    verbose: bool = True


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "vork"
    return Path.home() / ".config" / "vork"


def default_system_prompt() -> str:
    return DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    _validate_values(config, source)


def _validate_values(config: dict, source: str) -> None:
    threshold = config.get("compaction_threshold")
    if threshold is not None and not 0 < threshold <= 1:
        raise ConfigError(
            f"{source}: 'compaction_threshold' must be in (0, 1], got {threshold}"
        )
    for key in ("keep_recent", "max_context_tokens", "command_timeout"):
        value = config.get(key)
        if value is not None and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1, got {value}")
    try:
        if config.get("approval_policy") is not None:
            validate_policy(config["approval_policy"])
        if config.get("sandbox_mode") is not None:
            validate_sandbox_mode(config["sandbox_mode"])
    except ConfigError as e:
        raise ConfigError(f"{source}: {e}") from e


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def config_path(base_dir, project: bool = False) -> Path:
    """Return the global config file, or the project one for ``base_dir``."""
    if project:
        return Path(base_dir).resolve() / "vork.toml"
    return global_config_dir() / "config.toml"


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    The returned dict also contains ``config_dir`` (a ``Path``) pointing
    to the resolved global config directory.
    """
    config_dir = global_config_dir()
    global_path = config_path(base_dir)
    global_config = _load_single(global_path, str(global_path))

    project_path = config_path(base_dir, project=True)
    project_config = _load_single(project_path, str(project_path))

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Keys still holding _UNSET after config is applied fall back to the
    hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if key in _INVERTED_KEYS:
            dest = _INVERTED_KEYS[key]
            if _is_unset(dest):
                setattr(args, dest, not value)
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def build_assistant_config(args: argparse.Namespace) -> AssistantConfig:
    """Turn a fully resolved namespace into an AssistantConfig.

    CLI-supplied values are validated here too, since they bypass the
    file validation in _load_single.
    """
    _validate_values(
        {
            "compaction_threshold": args.compaction_threshold,
            "keep_recent": args.keep_recent,
            "max_context_tokens": args.max_context_tokens,
            "command_timeout": args.command_timeout,
            "approval_policy": args.approval_policy,
            "sandbox_mode": args.sandbox_mode,
        },
        "command line",
    )
    return AssistantConfig(
        server_url=args.server_url,
        model=args.model,
        temperature=float(args.temperature),
        max_context_tokens=args.max_context_tokens,
        compaction_threshold=float(args.compaction_threshold),
        keep_recent=args.keep_recent,
        approval_policy=args.approval_policy,
        sandbox_mode=args.sandbox_mode,
        request_timeout=args.request_timeout,
        command_timeout=args.command_timeout,
        web_search_url=args.web_search_url,
        system_prompt=args.system_prompt or default_system_prompt(),
        agent=args.agent,
        auto_agent=not args.no_auto_agent,
        warmup=not args.no_warmup,
        base_dir=str(Path(args.base_dir).resolve()),
        config_dir=getattr(args, "config_dir", None) or global_config_dir(),
        verbose=not args.quiet,
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# vork configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/vork.toml' if project else '~/.config/vork/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Model server ---",
        '# server_url = "http://localhost:8080"',
        '# model = "local-model"',
        "# request_timeout = 600",
        "# warmup = true",
        "",
        "# --- Generation / context ---",
        "# temperature = 0.7",
        "# max_context_tokens = 32768",
        "# compaction_threshold = 0.75   # compact when the estimate exceeds this share",
        "# keep_recent = 10              # messages kept verbatim after compaction",
        '# system_prompt = "You are a helpful coding assistant."',
        "",
        "# --- Sandbox / approval ---",
        '# approval_policy = "auto"        # "auto" | "read-only" | "always-ask" | "never"',
        '# sandbox_mode = "workspace-write" # "read-only" | "workspace-write" | "danger-full-access"',
        "# command_timeout = 120",
        "",
        "# --- Agents ---",
        '# agent = "rust-expert"',
        "# auto_agent = true",
        "",
        "# --- Tools ---",
        '# web_search_url = "https://html.duckduckgo.com/html/"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
