"""Approval gate: decides whether a mutating operation may proceed.

The decision depends on the sandbox mode (which class of side effects is
permitted at all) and the approval policy (whether a permitted operation
still needs the operator's confirmation).
"""

from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .errors import ConfigError

POLICIES = ("auto", "read-only", "always-ask", "never")
SANDBOX_MODES = ("read-only", "workspace-write", "danger-full-access")

ALLOW = "allow"
DENY = "deny"
ASK = "ask"

WRITE = "write"
COMMAND = "command"

DANGEROUS_PATTERNS = (
    "rm -rf",
    "rm -fr",
    "sudo",
    "shutdown",
    "reboot",
    "mkfs",
    "dd if=",
    "format",
    "> /dev/",
    "curl",
    "wget",
    "nc ",
    "netcat",
)

# Irrecoverable system-level operations; even policy "never" prompts for these.
CRITICAL_PATTERNS = (
    "sudo",
    "shutdown",
    "reboot",
    "mkfs",
    "dd if=",
    "format",
    "> /dev/",
)


@dataclass
class ApprovalDecision:
    approved: bool
    description: str
    prompted: bool = False
    blocked: bool = False  # refused by the sandbox without consulting policy


def validate_policy(policy: str) -> str:
    if policy not in POLICIES:
        raise ConfigError(
            f"unknown approval policy {policy!r} (expected one of: {', '.join(POLICIES)})"
        )
    return policy


def validate_sandbox_mode(mode: str) -> str:
    if mode not in SANDBOX_MODES:
        raise ConfigError(
            f"unknown sandbox mode {mode!r} (expected one of: {', '.join(SANDBOX_MODES)})"
        )
    return mode


def is_dangerous_command(command: str) -> bool:
    return any(p in command for p in DANGEROUS_PATTERNS)


def is_critical_command(command: str) -> bool:
    return any(p in command for p in CRITICAL_PATTERNS)


def is_within_workspace(path: str, base_dir: str) -> bool:
    """True if ``path`` resolves inside ``base_dir`` (symlinks and '..' followed)."""
    base = Path(base_dir).resolve()
    p = Path(path).expanduser()
    resolved = p.resolve() if p.is_absolute() else (base / p).resolve()
    return resolved.is_relative_to(base)


def decide(
    policy: str, sandbox_mode: str, kind: str, target: str, base_dir: str = "."
) -> tuple[str, str]:
    """Pure decision function. Returns (verdict, description).

    verdict is one of ALLOW, DENY, ASK; description is the human-readable
    operation text shown to the operator when prompting.
    """
    if kind == WRITE:
        description = f"Write file: {target}"
    elif kind == COMMAND:
        description = f"Execute command: {target}"
    else:
        raise ValueError(f"unknown operation kind {kind!r}")

    if sandbox_mode == "read-only":
        return DENY, description

    if sandbox_mode == "workspace-write":
        if policy == "never":
            return ALLOW, description
        if policy == "auto":
            if kind == WRITE:
                if is_within_workspace(target, base_dir):
                    return ALLOW, description
                return ASK, f"Write file outside workspace: {target}"
            if is_dangerous_command(target):
                return ASK, f"Execute potentially dangerous command: {target}"
            return ALLOW, description
        return ASK, description

    if sandbox_mode == "danger-full-access":
        if policy in ("always-ask", "read-only"):
            return ASK, description
        if policy == "never" and kind == COMMAND and is_critical_command(target):
            return ASK, f"Execute critical system command: {target}"
        return ALLOW, description

    raise ValueError(f"unknown sandbox mode {sandbox_mode!r}")


class ApprovalGate:
    """Binds a policy and sandbox mode to a working directory and a prompt.

    ``prompt`` is called with the operation description when the decision is
    ASK and must return True to approve. It blocks until answered.
    """

    def __init__(
        self,
        policy: str = "auto",
        sandbox_mode: str = "workspace-write",
        base_dir: str = ".",
        prompt=None,
    ):
        self.policy = validate_policy(policy)
        self.sandbox_mode = validate_sandbox_mode(sandbox_mode)
        self.base_dir = base_dir
        self.prompt = prompt or fmt.confirm

    def check(self, kind: str, target: str) -> ApprovalDecision:
        verdict, description = decide(
            self.policy, self.sandbox_mode, kind, target, self.base_dir
        )
        if verdict == ALLOW:
            return ApprovalDecision(True, description)
        if verdict == DENY:
            fmt.warning(f"blocked by read-only sandbox: {description}")
            return ApprovalDecision(False, description, blocked=True)
        approved = bool(self.prompt(description))
        return ApprovalDecision(approved, description, prompted=True)

    def check_write(self, path: str) -> ApprovalDecision:
        return self.check(WRITE, path)

    def check_command(self, command: str) -> ApprovalDecision:
        return self.check(COMMAND, command)
