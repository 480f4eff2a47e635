"""Conversation log with a running token estimate and LLM-driven compaction."""

from dataclasses import dataclass

from .errors import AgentError

ROLES = ("system", "user", "assistant")

DEFAULT_MAX_CONTEXT = 32768
DEFAULT_COMPACTION_THRESHOLD = 0.75
DEFAULT_KEEP_RECENT = 10

TOOL_RESULT_TEMPLATE = "Tool execution result:\nTool: {name}\nResult:\n{result}"
SUMMARY_HEADER = "[Conversation summary of {count} messages]"

SUMMARY_PROMPT = (
    "Summarize the following conversation history concisely, preserving key facts, "
    "decisions, and context. Focus on:\n"
    "- Important technical details and decisions\n"
    "- File modifications and their purposes\n"
    "- Commands executed and their results\n"
    "- Any errors or issues encountered\n\n"
    "Conversation:\n{history}\n\n"
    "Provide a concise summary in 2-3 paragraphs:"
)


def estimate_tokens(text: str) -> int:
    """Cheap token estimate: ~4 characters per token plus role overhead."""
    return len(text) // 4 + 10


@dataclass
class Message:
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


class Conversation:
    """Ordered message log whose first entry is always the system prompt.

    ``estimated_tokens`` is kept equal to the sum of ``estimate_tokens`` over
    every message. Appends update it incrementally; anything that rebuilds
    the log recomputes it from scratch.
    """

    def __init__(
        self,
        system_prompt: str,
        *,
        max_context: int = DEFAULT_MAX_CONTEXT,
        compaction_threshold: float = DEFAULT_COMPACTION_THRESHOLD,
        keep_recent: int = DEFAULT_KEEP_RECENT,
    ):
        if not 0 < compaction_threshold <= 1:
            raise ValueError("compaction_threshold must be in (0, 1]")
        if keep_recent < 1:
            raise ValueError("keep_recent must be at least 1")
        self.messages: list[Message] = [Message("system", system_prompt)]
        self.max_context = max_context
        self.compaction_threshold = compaction_threshold
        self.keep_recent = keep_recent
        self.estimated_tokens = estimate_tokens(system_prompt)

    # -- appends -------------------------------------------------------------

    def _append(self, role: str, content: str) -> None:
        self.messages.append(Message(role, content))
        self.estimated_tokens += estimate_tokens(content)

    def add_user(self, text: str) -> None:
        self._append("user", text)

    def add_assistant(self, text: str) -> None:
        self._append("assistant", text)

    def add_tool_result(self, tool_name: str, result_text: str) -> None:
        # The backend has no tool role, so results travel as user turns.
        self._append(
            "user", TOOL_RESULT_TEMPLATE.format(name=tool_name, result=result_text)
        )

    # -- rebuilds ------------------------------------------------------------

    def recompute_tokens(self) -> int:
        self.estimated_tokens = sum(estimate_tokens(m.content) for m in self.messages)
        return self.estimated_tokens

    def set_system_prompt(self, text: str) -> None:
        self.messages[0] = Message("system", text)
        self.recompute_tokens()

    def clear(self) -> int:
        """Drop everything but the system prompt. Returns the number removed."""
        dropped = len(self.messages) - 1
        del self.messages[1:]
        self.recompute_tokens()
        return dropped

    # -- compaction ----------------------------------------------------------

    def needs_compaction(self) -> bool:
        return self.estimated_tokens > self.max_context * self.compaction_threshold

    def can_compact(self) -> bool:
        """True when there is at least one message between system and the tail."""
        return len(self.messages) > self.keep_recent + 1

    def compact_if_needed(self, backend, *, force: bool = False) -> bool:
        """Summarize the middle of the log when it grows past the threshold.

        Keeps the system prompt and the last ``keep_recent`` messages verbatim
        and replaces everything in between with one assistant-role summary
        produced by ``backend``. With ``force`` the threshold is ignored but
        the minimum-size check still applies.

        Returns True if the log was compacted. If the summarization call
        raises, the exception propagates and the log is left untouched.
        """
        if not force and not self.needs_compaction():
            return False
        if not self.can_compact():
            return False

        system_msg = self.messages[0]
        to_summarize = self.messages[1 : -self.keep_recent]
        tail = self.messages[-self.keep_recent :]

        history = "\n\n".join(f"{m.role}: {m.content}" for m in to_summarize)
        prompt = SUMMARY_PROMPT.format(history=history)
        reply = backend.chat_completion(
            [{"role": "user", "content": prompt}], tools=None
        )
        summary = getattr(reply, "content", None) or ""

        header = SUMMARY_HEADER.format(count=len(to_summarize))
        self.messages = [
            system_msg,
            Message("assistant", f"{header}\n\n{summary}"),
            *tail,
        ]
        self.recompute_tokens()
        return True

    # -- reporting / wire format ---------------------------------------------

    def get_context_usage(self) -> tuple[int, int, float]:
        """Return (used, max, percentage) for the status line."""
        if self.max_context <= 0:
            return self.estimated_tokens, self.max_context, 0.0
        percentage = self.estimated_tokens / self.max_context * 100.0
        return self.estimated_tokens, self.max_context, percentage

    def to_dicts(self) -> list[dict]:
        return [m.to_dict() for m in self.messages]

    @classmethod
    def from_dicts(
        cls,
        messages: list,
        *,
        max_context: int = DEFAULT_MAX_CONTEXT,
        compaction_threshold: float = DEFAULT_COMPACTION_THRESHOLD,
        keep_recent: int = DEFAULT_KEEP_RECENT,
    ) -> "Conversation":
        """Rebuild a conversation from its serialized message list."""
        if not isinstance(messages, list) or not messages:
            raise AgentError("conversation has no messages")
        parsed: list[Message] = []
        for i, raw in enumerate(messages):
            if not isinstance(raw, dict):
                raise AgentError(f"message {i} is not an object")
            role = raw.get("role")
            content = raw.get("content")
            if role not in ROLES:
                raise AgentError(f"message {i} has invalid role {role!r}")
            if not isinstance(content, str):
                raise AgentError(f"message {i} has non-string content")
            parsed.append(Message(role, content))
        if parsed[0].role != "system":
            raise AgentError("first message must be the system prompt")

        conv = cls(
            parsed[0].content,
            max_context=max_context,
            compaction_threshold=compaction_threshold,
            keep_recent=keep_recent,
        )
        conv.messages = parsed
        conv.recompute_tokens()
        return conv
