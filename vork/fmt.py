"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Session structure -------------------------------------------------------


def banner(
    *,
    session_id: str,
    server_url: str,
    model: str,
    sandbox_mode: str,
    approval_policy: str,
    working_dir: str,
) -> None:
    _console.print(Rule("vork", style="green"))
    for label, value in (
        ("Session", session_id),
        ("Server", server_url),
        ("Model", model),
        ("Sandbox", sandbox_mode),
        ("Approval", approval_policy),
        ("Working dir", working_dir),
    ):
        line = Text()
        line.append(f"  {label}: ", style="cyan")
        line.append(value)
        _console.print(line)
    _console.print(
        Text("  Type /help for commands, exit or Ctrl-D to quit.", style="dim")
    )


def agent_selected(name: str, description: str) -> None:
    line = Text()
    line.append("  Agent: ", style="bold magenta")
    line.append(f"{name} - {description}", style="magenta")
    _console.print(line)


def llm_timing(elapsed: float, tool_calls: int) -> None:
    style = "yellow" if tool_calls else "green"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    if tool_calls:
        text.append(f"  tool_calls={tool_calls}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Approval ----------------------------------------------------------------


def confirm(description: str) -> bool:
    """Ask the operator to approve an operation. Only y/yes approves."""
    line = Text()
    line.append("\n  \U0001f512 ", style="bold yellow")
    line.append(description, style="yellow")
    _console.print(line)
    try:
        answer = _console.input("[bold cyan]  Approve?[/] \\[y/N]: ")
    except EOFError:
        answer = ""
    approved = answer.strip().lower() in ("y", "yes")
    if approved:
        _console.print(Text("  ✓ Approved", style="green"))
    else:
        _console.print(Text("  ✗ Denied", style="red"))
    return approved


# -- Context -----------------------------------------------------------------


def context_status(used: int, max_context: int, percentage: float) -> None:
    style = "yellow" if percentage >= 75 else "dim"
    _console.print(
        Text(f"  Context: {used}/{max_context} tokens ({percentage:.1f}%)", style=style)
    )


def compaction(tokens_before: int, tokens_after: int) -> None:
    line = Text()
    line.append("  ↻ Context compacted: ", style="bold cyan")
    line.append(
        f"~{tokens_before} -> ~{tokens_after} tokens "
        "(older messages were summarized)",
        style="cyan",
    )
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
