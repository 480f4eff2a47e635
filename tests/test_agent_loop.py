"""Tests for the tool-calling loop and a full exchange."""

import json
import types

import pytest

from vork import fmt
from vork.agent import handle_tool_call, run_agent_loop, run_exchange
from vork.approval import ApprovalGate
from vork.conversation import Conversation
from vork.errors import BackendError
from vork.session import Session, SessionStore
from vork.tools import TOOLS


def _make_message(content=None, tool_calls=None):
    return types.SimpleNamespace(content=content, tool_calls=tool_calls, role="assistant")


def _make_tool_call(name, arguments, call_id="call_1"):
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    tc = types.SimpleNamespace()
    tc.id = call_id
    tc.function = types.SimpleNamespace(name=name, arguments=arguments)
    return tc


class ScriptedClient:
    """Returns queued responses in order and records every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.temperature = 0.7
        self.model = "test-model"

    def chat_completion(self, messages, tools=None):
        self.requests.append(([dict(m) for m in messages], tools))
        if not self.responses:
            raise AssertionError("unexpected backend call")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _gate(tmp_path, policy="auto", sandbox="workspace-write", answers=()):
    answers = list(answers)
    prompts = []

    def prompt(description):
        prompts.append(description)
        return answers.pop(0) if answers else False

    gate = ApprovalGate(policy, sandbox, str(tmp_path), prompt=prompt)
    gate.prompts = prompts
    return gate


def _loop(conv, client, tmp_path, gate=None):
    return run_agent_loop(
        conv,
        client,
        tools=TOOLS,
        gate=gate or _gate(tmp_path),
        base_dir=str(tmp_path),
        verbose=False,
    )


class TestHandleToolCall:
    def test_success(self, tmp_path):
        (tmp_path / "a.txt").write_text("hi")
        result, meta = handle_tool_call(
            _make_tool_call("read_file", {"path": "a.txt"}),
            gate=_gate(tmp_path),
            base_dir=str(tmp_path),
            verbose=False,
        )
        assert result == "hi"
        assert meta["succeeded"]
        assert meta["arguments"] == {"path": "a.txt"}

    def test_invalid_json_becomes_error_result(self, tmp_path):
        result, meta = handle_tool_call(
            _make_tool_call("read_file", "{not json"),
            gate=_gate(tmp_path),
            base_dir=str(tmp_path),
            verbose=False,
        )
        assert result.startswith("Error: invalid JSON")
        assert not meta["succeeded"]

    def test_executor_failure_becomes_error_result(self, tmp_path):
        result, meta = handle_tool_call(
            _make_tool_call("read_file", {"path": "missing.txt"}),
            gate=_gate(tmp_path),
            base_dir=str(tmp_path),
            verbose=False,
        )
        assert result.startswith("Error: Failed to read file: missing.txt")
        assert not meta["succeeded"]


class TestScenarios:
    def test_list_files_round_trip(self, tmp_path):
        (tmp_path / "one.txt").write_text("1")
        (tmp_path / "dir").mkdir()
        conv = Conversation("sys")
        conv.add_user("list files")
        client = ScriptedClient(
            _make_message(tool_calls=[_make_tool_call("list_files", {"path": "."})]),
            _make_message(content="There is one file and one directory."),
        )

        answer = _loop(conv, client, tmp_path)

        assert answer == "There is one file and one directory."
        roles = [m.role for m in conv.messages]
        assert roles == ["system", "user", "user", "assistant"]
        assert conv.messages[2].content == (
            "Tool execution result:\nTool: list_files\nResult:\ndir/\none.txt"
        )
        assert len(client.requests) == 2
        second_request, tools = client.requests[1]
        assert tools is TOOLS
        assert second_request[-1]["content"].endswith("dir/\none.txt")

    def test_denied_write_is_visible_to_model(self, tmp_path):
        conv = Conversation("sys")
        conv.add_user("write x")
        gate = _gate(tmp_path, policy="always-ask", answers=[False])
        client = ScriptedClient(
            _make_message(
                tool_calls=[_make_tool_call("write_file", {"path": "x.txt", "content": "data"})]
            ),
            _make_message(content="OK, I won't write it."),
        )

        _loop(conv, client, tmp_path, gate=gate)

        assert gate.prompts == ["Write file: x.txt"]
        assert not (tmp_path / "x.txt").exists()
        assert conv.messages[2].content.endswith("Write to x.txt was denied by user")
        second_request, _ = client.requests[1]
        assert "Write to x.txt was denied by user" in second_request[-1]["content"]

    def test_exchange_compacts_large_log(self, tmp_path):
        store = SessionStore(tmp_path / "sessions")
        session = Session.new("sys", str(tmp_path), max_context=1000)
        for i in range(39):
            if i % 2:
                session.conversation.add_assistant("a" * 50)
            else:
                session.conversation.add_user("u" * 50)
        used, _, pct = session.conversation.get_context_usage()
        assert pct >= 80
        client = ScriptedClient(
            _make_message(content="final"),
            _make_message(content="short summary"),
        )

        answer = run_exchange(
            session, "next", client=client, tools=TOOLS, gate=_gate(tmp_path),
            store=store, verbose=False,
        )

        assert answer == "final"
        assert session.conversation.estimated_tokens < used
        assert session.conversation.messages[1].content.startswith(
            "[Conversation summary of"
        )
        assert session.conversation.messages[-1].content == "final"
        summary_request, summary_tools = client.requests[1]
        assert summary_tools is None
        assert store.load(session.id).conversation.to_dicts() == session.conversation.to_dicts()


class TestLoopBehaviour:
    def test_multiple_tool_calls_in_order(self, tmp_path):
        (tmp_path / "a.txt").write_text("A")
        (tmp_path / "b.txt").write_text("B")
        conv = Conversation("sys")
        conv.add_user("read both")
        client = ScriptedClient(
            _make_message(
                tool_calls=[
                    _make_tool_call("read_file", {"path": "a.txt"}, "c1"),
                    _make_tool_call("read_file", {"path": "b.txt"}, "c2"),
                ]
            ),
            _make_message(content="done"),
        )
        _loop(conv, client, tmp_path)
        assert conv.messages[2].content.endswith("Result:\nA")
        assert conv.messages[3].content.endswith("Result:\nB")

    def test_bad_arguments_fed_back(self, tmp_path):
        conv = Conversation("sys")
        conv.add_user("go")
        client = ScriptedClient(
            _make_message(tool_calls=[_make_tool_call("write_file", {"path": "x"})]),
            _make_message(content="retrying later"),
        )
        assert _loop(conv, client, tmp_path) == "retrying later"
        assert "Error: missing required parameter 'content'" in conv.messages[2].content

    def test_unknown_tool_fed_back(self, tmp_path):
        conv = Conversation("sys")
        conv.add_user("go")
        client = ScriptedClient(
            _make_message(tool_calls=[_make_tool_call("teleport", {})]),
            _make_message(content="ok"),
        )
        _loop(conv, client, tmp_path)
        assert "Tool: teleport" in conv.messages[2].content
        assert "Error: unknown tool" in conv.messages[2].content

    def test_backend_error_keeps_appended_messages(self, tmp_path):
        (tmp_path / "a.txt").write_text("A")
        conv = Conversation("sys")
        conv.add_user("read")
        client = ScriptedClient(
            _make_message(tool_calls=[_make_tool_call("read_file", {"path": "a.txt"})]),
            BackendError("model server error 500: boom", 500),
        )
        with pytest.raises(BackendError) as exc:
            _loop(conv, client, tmp_path)
        assert exc.value.status_code == 500
        assert [m.role for m in conv.messages] == ["system", "user", "user"]

    def test_empty_answer_warns_and_terminates(self, tmp_path, monkeypatch):
        warnings = []
        monkeypatch.setattr(fmt, "warning", warnings.append)
        conv = Conversation("sys")
        conv.add_user("hi")
        client = ScriptedClient(_make_message(content=None))
        assert _loop(conv, client, tmp_path) == ""
        assert warnings == ["the model returned an empty response"]
        assert conv.messages[-1].role == "assistant"
        assert conv.messages[-1].content == ""

    def test_whitespace_answer_warns(self, tmp_path, monkeypatch):
        warnings = []
        monkeypatch.setattr(fmt, "warning", warnings.append)
        conv = Conversation("sys")
        conv.add_user("hi")
        _loop(conv, ScriptedClient(_make_message(content="  \n")), tmp_path)
        assert len(warnings) == 1

    def test_no_tools(self, tmp_path):
        conv = Conversation("sys")
        conv.add_user("hi")
        client = ScriptedClient(_make_message(content="hello"))
        run_agent_loop(
            conv, client, tools=None, gate=_gate(tmp_path), base_dir=str(tmp_path),
            verbose=False,
        )
        assert client.requests[0][1] is None


class TestRunExchange:
    def test_saves_session(self, tmp_path):
        store = SessionStore(tmp_path / "sessions")
        session = Session.new("sys", str(tmp_path))
        client = ScriptedClient(_make_message(content="hi there"))
        run_exchange(
            session, "hello", client=client, tools=TOOLS, gate=_gate(tmp_path),
            store=store, verbose=False,
        )
        loaded = store.load(session.id)
        assert [m["content"] for m in loaded.conversation.to_dicts()] == [
            "sys",
            "hello",
            "hi there",
        ]

    def test_save_failure_still_returns_answer(self, tmp_path, monkeypatch):
        errors = []
        monkeypatch.setattr(fmt, "error", errors.append)
        (tmp_path / "blocker").write_text("")
        store = SessionStore(tmp_path / "blocker" / "sessions")
        session = Session.new("sys", str(tmp_path))
        client = ScriptedClient(_make_message(content="hi there"))
        answer = run_exchange(
            session, "hello", client=client, tools=TOOLS, gate=_gate(tmp_path),
            store=store, verbose=False,
        )
        assert answer == "hi there"
        assert len(errors) == 1
        assert errors[0].startswith(f"failed to save session {session.id}: ")
        assert not list(tmp_path.glob("**/*.json.tmp"))

    def test_force_compact_respects_floor(self, tmp_path):
        session = Session.new("sys", str(tmp_path))
        client = ScriptedClient(_make_message(content="answer"))
        run_exchange(
            session, "hello", client=client, tools=TOOLS, gate=_gate(tmp_path),
            store=None, verbose=False, force_compact=True,
        )
        assert len(client.requests) == 1
        assert len(session.conversation.messages) == 3

    def test_compaction_failure_propagates(self, tmp_path):
        session = Session.new("sys", str(tmp_path), max_context=10)
        for i in range(12):
            session.conversation.add_user(f"m{i}")
        client = ScriptedClient(
            _make_message(content="answer"),
            BackendError("summary failed"),
        )
        with pytest.raises(BackendError, match="summary failed"):
            run_exchange(
                session, "hello", client=client, tools=TOOLS, gate=_gate(tmp_path),
                store=None, verbose=False,
            )
        assert session.conversation.messages[-1].content == "answer"
        assert len(session.conversation.messages) == 15
