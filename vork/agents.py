"""Agent profiles: named system prompts with their own sampling settings.

Profiles are JSON files under ``<config_dir>/agents/<name>.json``.
``select_profile`` picks one from the text of the first request.
"""

import json
from dataclasses import asdict, dataclass
from pathlib import Path

from .errors import ConfigError


@dataclass
class Profile:
    name: str
    description: str
    system_prompt: str
    temperature: float = 0.7
    color: str = "green"
    title: str | None = None
    model: str | None = None

    @classmethod
    def from_dict(cls, data: dict, source: str = "profile") -> "Profile":
        if not isinstance(data, dict):
            raise ConfigError(f"{source}: expected a JSON object")
        for key in ("name", "description", "system_prompt"):
            if not isinstance(data.get(key), str):
                raise ConfigError(f"{source}: {key!r} must be a string")
        temperature = data.get("temperature", 0.7)
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise ConfigError(f"{source}: 'temperature' must be a number")
        for key in ("color", "title", "model"):
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"{source}: {key!r} must be a string")
        return cls(
            name=data["name"],
            description=data["description"],
            system_prompt=data["system_prompt"],
            temperature=float(temperature),
            color=data.get("color") or "green",
            title=data.get("title"),
            model=data.get("model"),
        )


class ProfileStore:
    """Reads and writes profile files in one directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name.startswith("."):
            raise ConfigError(f"invalid agent name {name!r}")
        return self.root / f"{name}.json"

    def load(self, name: str) -> Profile:
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ConfigError(f"agent {name!r} not found in {self.root}")
        except OSError as e:
            raise ConfigError(f"failed to load agent {name!r}: {e}") from e
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: invalid JSON: {e}") from e
        return Profile.from_dict(data, str(path))

    def save(self, profile: Profile) -> Path:
        path = self.path_for(profile.name)
        self.root.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(profile), indent=2) + "\n", encoding="utf-8")
        return path

    def list_names(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json") if p.is_file())


# Ordered: the first profile with a matching keyword that loads wins, so the
# more specific roles come first.
KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("researcher", (
        "research", "look up", "find information", "search online", "web search",
        "google", "documentation", "how does", "what is", "learn about", "investigate",
    )),
    ("reverse-engineer", (
        "reverse engineer", "radare", "r2", "ghidra", "disassemble", "decompile",
        "binary analysis", "malware", "crackme", "ctf", "objdump", "strace", "ltrace",
    )),
    ("security-auditor", (
        "security", "vulnerability", "exploit", "cve", "injection", "xss", "auth",
        "crypto", "penetration test", "pentest",
    )),
    ("performance-optimizer", (
        "performance", "optimize", "speed", "slow", "benchmark", "profile", "perf",
        "memory leak", "bottleneck", "flamegraph",
    )),
    ("test-writer", (
        "test", "unit test", "integration test", "e2e", "coverage", "tdd", "pytest",
        "jest", "assert",
    )),
    ("code-auditor", (
        "audit", "compliance", "stub", "check quality", "review code quality",
        "find issues", "code smell", "technical debt", "unwrap", "panic", "todo", "fixme",
    )),
    ("code-editor", (
        "edit", "change", "modify", "update", "fix typo", "rename", "refactor small",
    )),
    ("release-manager", (
        "release", "version", "deploy", "publish", "changelog", "tag", "semver", "ship",
    )),
    ("devops", (
        "docker", "kubernetes", "ci/cd", "pipeline", "deploy", "container", "helm",
        "terraform", "ansible", "jenkins", "github actions",
    )),
    ("rust-expert", (
        "rust", "borrow", "lifetime", "ownership", "cargo", "async", "tokio", ".rs", "impl",
    )),
    ("reviewer", ("review", "code review", "feedback", "suggestions", "improve")),
    ("documenter", (
        "document", "doc", "comment", "readme", "explain", "describe", "documentation",
    )),
    ("debugger", (
        "debug", "fix bug", "error", "crash", "issue", "broken", "not working", "failing",
    )),
]


def select_profile(task_text: str, loader) -> Profile | None:
    """Return the first keyword-matched profile that ``loader`` can load.

    ``loader`` takes a profile name and returns a Profile, raising
    ConfigError when it is missing or invalid; such profiles are skipped.
    """
    text = task_text.lower()
    for name, keywords in KEYWORDS:
        if not any(k in text for k in keywords):
            continue
        try:
            return loader(name)
        except ConfigError:
            continue
    return None


_PATHS_NOTE = (
    "Paths are relative to the working directory: treat \"/src/\" as \"./src/\" "
    "unless the user clearly means a system location such as /usr/ or /etc/."
)


def _profile(name, description, temperature, color, title, body):
    return Profile(
        name=name,
        description=description,
        system_prompt=f"{body.strip()}\n\n{_PATHS_NOTE}",
        temperature=temperature,
        color=color,
        title=title,
    )


DEFAULT_PROFILES: list[Profile] = [
    _profile(
        "default", "General-purpose coding assistant", 0.7, "cyan", "vork",
        """
You are vork, a coding assistant. Read files before modifying them, make
changes with the tools instead of only suggesting them, and run tests with
bash_exec to verify your work.
""",
    ),
    _profile(
        "researcher", "Research specialist - looks things up and summarizes", 0.5,
        "bright_blue", "Researcher",
        """
You are a research assistant. Use web_search to find documentation and
reliable sources, compare what you find, and summarize it with links.
Say clearly when information is uncertain or could not be found.
""",
    ),
    _profile(
        "reverse-engineer", "Binary analysis and reverse engineering", 0.4,
        "bright_red", "Reverse Engineer",
        """
You are a reverse engineering specialist. Use command-line tools such as
objdump, strings, radare2, strace and ltrace through bash_exec to inspect
binaries. Report addresses, functions and data structures precisely and
keep notes of what each step revealed.
""",
    ),
    _profile(
        "security-auditor", "Security auditor - finds vulnerabilities", 0.4,
        "red", "Security Auditor",
        """
You are a security auditor. Look for injection flaws, unsafe input
handling, weak cryptography, leaked secrets and broken authentication.
For each finding give the file and line, the severity and a concrete fix.
""",
    ),
    _profile(
        "performance-optimizer", "Performance specialist - profiles and optimizes",
        0.5, "yellow", "Performance Optimizer",
        """
You are a performance engineer. Measure before changing anything, find the
actual bottleneck with profilers or benchmarks, apply focused
optimizations and measure again to confirm the gain.
""",
    ),
    _profile(
        "test-writer", "Test specialist - writes and runs tests", 0.5,
        "green", "Test Writer",
        """
You write tests. Read the code under test, cover normal cases, edge cases
and error paths, follow the project's existing test framework and layout,
and run the tests to make sure they pass.
""",
    ),
    _profile(
        "code-auditor", "Code quality auditor - finds stubs and unfinished work", 0.4,
        "bright_red", "Code Auditor",
        """
You audit code quality. Search for TODO and FIXME markers, stub
implementations, ignored errors and overly complex functions. Write a
report to ./docs/audit/ listing every issue with its file and line.
""",
    ),
    _profile(
        "code-editor", "Focused editor - makes small precise changes", 0.3,
        "cyan", "Code Editor",
        """
You make small, precise edits. Read the file, change only what was asked,
keep the surrounding style, and confirm the result builds or passes tests.
""",
    ),
    _profile(
        "release-manager", "Release manager - versions, changelogs, tags", 0.4,
        "magenta", "Release Manager",
        """
You manage releases. Bump versions consistently, update the changelog
from the commit history, and prepare tags. Ask before publishing anything.
""",
    ),
    _profile(
        "devops", "DevOps specialist - containers, CI/CD, infrastructure", 0.5,
        "blue", "DevOps",
        """
You are a DevOps engineer. Work on Dockerfiles, CI pipelines, Kubernetes
manifests and infrastructure code. Validate configuration with the
relevant tools before declaring it done.
""",
    ),
    _profile(
        "rust-expert", "Rust programming specialist", 0.6, "red", "Rust Expert",
        """
You are a Rust expert. Write idiomatic, safe Rust, explain ownership and
lifetimes when relevant, handle errors with Result, and run cargo build
and cargo test to check your changes.
""",
    ),
    _profile(
        "reviewer", "Code review specialist - finds bugs and suggests improvements",
        0.5, "magenta", "Code Reviewer",
        """
You are a meticulous code reviewer. Read the whole file first, point out
specific issues with line numbers, explain why they matter and suggest
concrete improvements. Mention what is done well too.
""",
    ),
    _profile(
        "documenter", "Documentation specialist - writes clear docs and comments",
        0.6, "blue", "Documentation Specialist",
        """
You write documentation. Read the code to understand it, then write clear
READMEs, guides and comments with usage examples and known edge cases.
""",
    ),
    _profile(
        "debugger", "Debugging specialist - finds and fixes bugs systematically",
        0.5, "yellow", "Debug Specialist",
        """
You are a debugging expert. Reproduce the problem, form hypotheses about
the cause, test them one at a time, fix the root cause and add a test
that prevents the regression.
""",
    ),
]


def create_default_profiles(store: ProfileStore) -> list[str]:
    """Write the built-in profiles, overwriting existing files of the same name."""
    for profile in DEFAULT_PROFILES:
        store.save(profile)
    return [p.name for p in DEFAULT_PROFILES]
