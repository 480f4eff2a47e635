import argparse
import json
import sys
import time
from importlib import metadata
from pathlib import Path

from . import fmt
from .agents import ProfileStore, create_default_profiles, select_profile
from .approval import POLICIES, SANDBOX_MODES, ApprovalGate
from .client import ChatClient
from .config import (
    _UNSET,
    AssistantConfig,
    apply_config_to_args,
    build_assistant_config,
    config_path,
    generate_config,
    load_config,
)
from .conversation import Conversation
from .errors import AgentError, ArgumentParseError, ConfigError
from .session import Session, SessionStore
from .tools import TOOLS, dispatch, parse_arguments

MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 500

EXIT_COMMANDS = ("exit", "quit", "/exit", "/quit")
COMPACT_COMMANDS = ("compact", "/compact")


def handle_tool_call(
    tool_call,
    *,
    gate: ApprovalGate,
    base_dir: str,
    verbose: bool,
    search_url: str | None = None,
    command_timeout: int | None = None,
):
    """Execute a single tool call and return (result_text, metadata).

    Argument and executor failures do not raise: they come back as an
    ``Error: ...`` result so the model can see and correct them.
    metadata has stable keys: name, arguments, elapsed, succeeded.
    """
    name = tool_call.function.name
    raw_args = tool_call.function.arguments

    try:
        args = parse_arguments(name, raw_args)
    except ArgumentParseError as e:
        if verbose:
            fmt.tool_error(name, str(e))
        return (
            f"Error: {e}",
            {"name": name, "arguments": None, "elapsed": 0.0, "succeeded": False},
        )

    if verbose:
        pretty = json.dumps(vars(args), indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    succeeded = True
    try:
        result = dispatch(
            args,
            gate=gate,
            base_dir=base_dir,
            search_url=search_url,
            command_timeout=command_timeout,
        )
    except Exception as e:
        result = f"Error: {e}"
        succeeded = False
    elapsed = time.monotonic() - t0

    if verbose:
        if succeeded:
            fmt.tool_result(name, elapsed, result[:MAX_RESULT_PREVIEW])
        else:
            fmt.tool_error(name, result)

    return result, {
        "name": name,
        "arguments": vars(args),
        "elapsed": elapsed,
        "succeeded": succeeded,
    }


def run_agent_loop(
    conversation: Conversation,
    client,
    *,
    tools: list | None,
    gate: ApprovalGate,
    base_dir: str,
    verbose: bool = True,
    search_url: str | None = None,
    command_timeout: int | None = None,
) -> str:
    """Query the model and execute its tool calls until it gives a final answer.

    The caller appends the user message first. Tool results are appended
    as user-role envelopes; the final answer is appended as the single
    assistant message of the exchange and returned. BackendError from the
    client propagates and leaves already-appended messages in place.
    """
    while True:
        t0 = time.monotonic()
        if verbose:
            with fmt.llm_spinner():
                msg = client.chat_completion(conversation.to_dicts(), tools)
        else:
            msg = client.chat_completion(conversation.to_dicts(), tools)
        elapsed = time.monotonic() - t0

        tool_calls = getattr(msg, "tool_calls", None) or []
        content = getattr(msg, "content", None) or ""
        if verbose:
            fmt.llm_timing(elapsed, len(tool_calls))

        if not tool_calls:
            if not content.strip():
                fmt.warning("the model returned an empty response")
            conversation.add_assistant(content)
            return content

        if content.strip() and verbose:
            fmt.assistant_text(content.strip())

        for tc in tool_calls:
            result, _meta = handle_tool_call(
                tc,
                gate=gate,
                base_dir=base_dir,
                verbose=verbose,
                search_url=search_url,
                command_timeout=command_timeout,
            )
            conversation.add_tool_result(tc.function.name, result)


def _compact(session: Session, client, *, force: bool, verbose: bool) -> bool:
    conversation = session.conversation
    before = conversation.estimated_tokens
    if verbose and (force or conversation.needs_compaction()):
        fmt.info("compacting conversation...")
    compacted = conversation.compact_if_needed(client, force=force)
    if compacted and verbose:
        fmt.compaction(before, conversation.estimated_tokens)
    return compacted


def run_exchange(
    session: Session,
    text: str,
    *,
    client,
    tools: list | None,
    gate: ApprovalGate,
    store: SessionStore | None,
    verbose: bool = True,
    force_compact: bool = False,
    search_url: str | None = None,
    command_timeout: int | None = None,
) -> str:
    """One operator turn: user message, agent loop, compaction check, save."""
    session.conversation.add_user(text)
    answer = run_agent_loop(
        session.conversation,
        client,
        tools=tools,
        gate=gate,
        base_dir=session.working_directory,
        verbose=verbose,
        search_url=search_url,
        command_timeout=command_timeout,
    )
    _compact(session, client, force=force_compact, verbose=verbose)
    if store is not None:
        # the answer is still returned when the session cannot be written
        try:
            store.save(session)
        except AgentError as e:
            fmt.error(str(e))
    if verbose:
        fmt.context_status(*session.conversation.get_context_usage())
    return answer


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def apply_profile(profile, conversation: Conversation, client, verbose: bool) -> None:
    """Use a profile's prompt, temperature and model for the rest of the session."""
    conversation.set_system_prompt(profile.system_prompt)
    client.temperature = profile.temperature
    if profile.model:
        client.model = profile.model
    if verbose:
        fmt.agent_selected(profile.name, profile.description)


def _auto_select(text: str, profiles: ProfileStore, conversation, client, verbose) -> None:
    profile = select_profile(text, profiles.load)
    if profile is not None:
        apply_profile(profile, conversation, client, verbose)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that can also come from config files default to _UNSET so
    apply_config_to_args() can tell whether the command line set them.
    """
    parser = argparse.ArgumentParser(
        prog="vork",
        description="A coding assistant for local OpenAI-compatible model servers.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--server-url",
        default=_UNSET,
        help="Model server base URL (default: http://localhost:8080).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model name sent to the server (default: local-model).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: 0.7).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context budget used for compaction (default: 32768).",
    )
    parser.add_argument(
        "--approval-policy",
        choices=POLICIES,
        default=_UNSET,
        help="When to ask before writes and commands (default: auto).",
    )
    parser.add_argument(
        "--sandbox-mode",
        choices=SANDBOX_MODES,
        default=_UNSET,
        help="Which side effects are allowed at all (default: workspace-write).",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Working directory for tools (default: current directory).",
    )
    parser.add_argument(
        "--agent",
        default=_UNSET,
        help="Use this agent profile instead of auto-selecting one.",
    )
    parser.add_argument(
        "--no-auto-agent",
        action="store_true",
        default=_UNSET,
        help="Don't pick an agent profile from the first message.",
    )
    parser.add_argument(
        "--no-warmup",
        action="store_true",
        default=_UNSET,
        help="Don't send a warm-up request when a chat starts.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print answers.",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    chat = sub.add_parser("chat", help="Start an interactive session (default).")
    chat.add_argument("prompt", nargs="?", default=None, help="Optional first message.")

    ask = sub.add_parser("ask", help="Answer a single question without saving a session.")
    ask.add_argument("question", help="The question or task for the model.")
    ask.add_argument(
        "--no-tools",
        action="store_true",
        help="Don't offer any tools to the model.",
    )

    exec_ = sub.add_parser(
        "exec",
        help="Run one task non-interactively and save it as a session.",
    )
    exec_.add_argument("prompt", help="The task for the model.")
    exec_.add_argument(
        "--full-auto",
        action="store_true",
        help="Allow writes and commands without asking (danger-full-access).",
    )
    exec_.add_argument(
        "--json",
        action="store_true",
        help="Print the session id and final message as JSON.",
    )

    resume = sub.add_parser("resume", help="Continue a saved session.")
    resume.add_argument("session_id", nargs="?", default=None, help="Session to resume.")
    resume.add_argument(
        "--last",
        action="store_true",
        help="Resume the most recently updated session.",
    )

    sub.add_parser("sessions", help="List saved sessions, newest first.")

    agents = sub.add_parser("agents", help="List agent profiles, or show one.")
    agents.add_argument("name", nargs="?", default=None, help="Profile to show.")
    agents.add_argument(
        "--init",
        action="store_true",
        help="Write the built-in agent profiles to the config directory.",
    )

    config = sub.add_parser("config", help="Print a commented config template.")
    config.add_argument(
        "--project",
        action="store_true",
        help="Print the project (vork.toml) variant.",
    )
    config.add_argument(
        "--path",
        action="store_true",
        help="Print where the config file is read from instead of a template.",
    )

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("vork")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.command == "config":
        if args.path:
            print(config_path(args.base_dir, project=args.project))
        else:
            print(generate_config(project=args.project))
        return

    try:
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args):
    if not Path(args.base_dir).is_dir():
        raise ConfigError(f"base directory does not exist: {args.base_dir}")
    apply_config_to_args(args, load_config(Path(args.base_dir)))
    fmt.init(color=args.color, no_color=args.no_color)
    cfg = build_assistant_config(args)

    store = SessionStore(
        cfg.config_dir / "sessions",
        max_context=cfg.max_context_tokens,
        compaction_threshold=cfg.compaction_threshold,
        keep_recent=cfg.keep_recent,
    )
    profiles = ProfileStore(cfg.config_dir / "agents")

    command = args.command or "chat"
    if command == "sessions":
        _list_sessions(store)
    elif command == "agents":
        if args.name and not args.init:
            _show_agent(profiles, args.name)
        else:
            _list_agents(profiles, init=args.init)
    elif command == "ask":
        _cmd_ask(cfg, profiles, args.question, no_tools=args.no_tools)
    elif command == "exec":
        _cmd_exec(
            cfg,
            store,
            profiles,
            args.prompt,
            full_auto=args.full_auto,
            json_output=args.json,
        )
    elif command == "resume":
        _cmd_resume(cfg, store, args.session_id, last=args.last)
    else:
        _cmd_chat(cfg, store, profiles, getattr(args, "prompt", None))


def _list_sessions(store: SessionStore) -> None:
    sessions = store.list_sessions()
    if not sessions:
        fmt.info("No saved sessions.")
        return
    for i, s in enumerate(sessions, start=1):
        updated = s.updated_at.strftime("%Y-%m-%d %H:%M:%S")
        print(f"{i}. {s.id}  (updated {updated}, {s.working_directory})")


def _list_agents(profiles: ProfileStore, *, init: bool) -> None:
    if init:
        names = create_default_profiles(profiles)
        fmt.info(f"Created {len(names)} agent profiles in {profiles.root}")
        return
    names = profiles.list_names()
    if not names:
        fmt.info("No agent profiles. Run 'vork agents --init' to create the defaults.")
        return
    for name in names:
        try:
            profile = profiles.load(name)
        except ConfigError as e:
            fmt.warning(str(e))
            continue
        print(f"{profile.name}: {profile.description}")


def _show_agent(profiles: ProfileStore, name: str) -> None:
    profile = profiles.load(name)
    print(f"Name: {profile.name}")
    print(f"Description: {profile.description}")
    print(f"Temperature: {profile.temperature}")
    print(f"Color: {profile.color}")
    if profile.title:
        print(f"Title: {profile.title}")
    if profile.model:
        print(f"Model: {profile.model}")
    print()
    print(profile.system_prompt)


def _make_client(cfg: AssistantConfig) -> ChatClient:
    return ChatClient(
        cfg.server_url,
        cfg.model,
        temperature=cfg.temperature,
        timeout=cfg.request_timeout,
    )


def _make_gate(cfg: AssistantConfig, base_dir: str) -> ApprovalGate:
    return ApprovalGate(cfg.approval_policy, cfg.sandbox_mode, base_dir)


def _cmd_ask(cfg, profiles, question, *, no_tools):
    client = _make_client(cfg)
    conversation = Conversation(
        cfg.system_prompt,
        max_context=cfg.max_context_tokens,
        compaction_threshold=cfg.compaction_threshold,
        keep_recent=cfg.keep_recent,
    )
    if cfg.agent:
        apply_profile(profiles.load(cfg.agent), conversation, client, cfg.verbose)
    elif cfg.auto_agent:
        _auto_select(question, profiles, conversation, client, cfg.verbose)

    conversation.add_user(question)
    answer = run_agent_loop(
        conversation,
        client,
        tools=None if no_tools else TOOLS,
        gate=_make_gate(cfg, cfg.base_dir),
        base_dir=cfg.base_dir,
        verbose=cfg.verbose,
        search_url=cfg.web_search_url,
        command_timeout=cfg.command_timeout,
    )
    print(answer)


def _cmd_exec(cfg, store, profiles, prompt, *, full_auto, json_output):
    """Run one task without prompting and save it as a session.

    The sandbox is read-only unless ``full_auto`` is set, which switches to
    danger-full-access with the ``never`` approval policy.
    """
    client = _make_client(cfg)
    session = Session.new(
        cfg.system_prompt,
        cfg.base_dir,
        max_context=cfg.max_context_tokens,
        compaction_threshold=cfg.compaction_threshold,
        keep_recent=cfg.keep_recent,
    )
    verbose = cfg.verbose and not json_output
    if cfg.agent:
        apply_profile(profiles.load(cfg.agent), session.conversation, client, verbose)
    elif cfg.auto_agent:
        _auto_select(prompt, profiles, session.conversation, client, verbose)

    if full_auto:
        gate = ApprovalGate("never", "danger-full-access", session.working_directory)
    else:
        gate = ApprovalGate(cfg.approval_policy, "read-only", session.working_directory)

    answer = run_exchange(
        session,
        prompt,
        client=client,
        tools=TOOLS,
        gate=gate,
        store=store,
        verbose=verbose,
        search_url=cfg.web_search_url,
        command_timeout=cfg.command_timeout,
    )
    if json_output:
        print(json.dumps({"session_id": session.id, "message": answer}, indent=2))
        return
    print(answer)
    if verbose:
        fmt.info(f"Session saved: {session.id}")


def _cmd_chat(cfg, store, profiles, prompt):
    client = _make_client(cfg)
    session = Session.new(
        cfg.system_prompt,
        cfg.base_dir,
        max_context=cfg.max_context_tokens,
        compaction_threshold=cfg.compaction_threshold,
        keep_recent=cfg.keep_recent,
    )
    if cfg.agent:
        apply_profile(profiles.load(cfg.agent), session.conversation, client, cfg.verbose)
    if cfg.warmup:
        client.warm_up()
    if cfg.verbose:
        _banner(cfg, session)

    auto_select = profiles if (cfg.auto_agent and not cfg.agent) else None
    gate = _make_gate(cfg, session.working_directory)
    if prompt:
        if auto_select is not None:
            _auto_select(prompt, auto_select, session.conversation, client, cfg.verbose)
            auto_select = None
        _exchange_and_print(session, prompt, cfg, client, gate, store)

    repl_loop(session, client, cfg=cfg, gate=gate, store=store, auto_select=auto_select)


def _cmd_resume(cfg, store, session_id, *, last):
    if last:
        session = store.last()
        if session is None:
            raise AgentError("no saved sessions to resume")
    elif session_id:
        session = store.load(session_id)
    else:
        _list_sessions(store)
        return

    if not Path(session.working_directory).is_dir():
        fmt.warning(
            f"session directory {session.working_directory} no longer exists, "
            f"using {cfg.base_dir}"
        )
        session.working_directory = cfg.base_dir

    client = _make_client(cfg)
    if cfg.warmup:
        client.warm_up()
    if cfg.verbose:
        _banner(cfg, session)
        fmt.info(f"Resumed session with {len(session.conversation.messages)} messages")
        fmt.context_status(*session.conversation.get_context_usage())

    gate = _make_gate(cfg, session.working_directory)
    repl_loop(session, client, cfg=cfg, gate=gate, store=store, auto_select=None)


def _banner(cfg: AssistantConfig, session: Session) -> None:
    fmt.banner(
        session_id=session.id,
        server_url=cfg.server_url,
        model=cfg.model,
        sandbox_mode=cfg.sandbox_mode,
        approval_policy=cfg.approval_policy,
        working_dir=session.working_directory,
    )


def _exchange_and_print(session, text, cfg, client, gate, store, force_compact=False):
    answer = run_exchange(
        session,
        text,
        client=client,
        tools=TOOLS,
        gate=gate,
        store=store,
        verbose=cfg.verbose,
        force_compact=force_compact,
        search_url=cfg.web_search_url,
        command_timeout=cfg.command_timeout,
    )
    if answer:
        print(answer)
    return answer


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /status            Show session and context usage\n"
        "  /compact           Summarize older messages now\n"
        "  /clear             Save this session and start a new one\n"
        "  /exit, /quit       Save and exit (also exit, quit, Ctrl-D)"
    )


def _repl_compact(session: Session, client, store: SessionStore, verbose: bool) -> None:
    conversation = session.conversation
    if not conversation.can_compact():
        fmt.warning(
            f"cannot compact: need more than {conversation.keep_recent + 1} messages "
            f"(have {len(conversation.messages)})"
        )
        return
    _compact(session, client, force=True, verbose=verbose)
    store.save(session)
    if verbose:
        fmt.context_status(*conversation.get_context_usage())


def _repl_clear(session: Session, store: SessionStore) -> Session:
    """Save the current session and return a fresh one with the same prompt."""
    store.save(session)
    conversation = session.conversation
    fresh = Session.new(
        conversation.messages[0].content,
        session.working_directory,
        max_context=conversation.max_context,
        compaction_threshold=conversation.compaction_threshold,
        keep_recent=conversation.keep_recent,
    )
    fmt.info(
        f"started new session {fresh.id} "
        f"({len(conversation.messages) - 1} messages left in {session.id})"
    )
    return fresh


def _repl_status(session: Session) -> None:
    fmt.info(f"Session: {session.id} ({len(session.conversation.messages)} messages)")
    fmt.context_status(*session.conversation.get_context_usage())


def repl_loop(
    session: Session,
    client,
    *,
    cfg: AssistantConfig,
    gate: ApprovalGate,
    store: SessionStore,
    auto_select: ProfileStore | None = None,
) -> Session:
    """Interactive read-eval-print loop. Returns the session active at exit.

    ``auto_select`` is the profile store to pick an agent from on the first
    message, or None when no selection should happen.
    """
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(cfg.config_dir) / "history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "vork> ")])

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        cmd = line.lower()
        if cmd in EXIT_COMMANDS:
            break
        if cmd == "/help":
            _repl_help()
            continue
        if cmd == "/status":
            _repl_status(session)
            continue
        if cmd == "/clear":
            try:
                session = _repl_clear(session, store)
            except AgentError as e:
                fmt.error(str(e))
            continue
        if cmd in COMPACT_COMMANDS:
            try:
                _repl_compact(session, client, store, cfg.verbose)
            except AgentError as e:
                fmt.error(f"compaction failed: {e}")
            continue

        if auto_select is not None:
            _auto_select(line, auto_select, session.conversation, client, cfg.verbose)
            auto_select = None

        try:
            _exchange_and_print(session, line, cfg, client, gate, store)
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
        except AgentError as e:
            fmt.error(str(e))

    try:
        store.save(session)
    except AgentError as e:
        fmt.error(str(e))
        return session
    if cfg.verbose:
        fmt.info(f"Session saved: {session.id}")
    return session


if __name__ == "__main__":
    main()
