"""Conversation transcript: turns, content blocks and their ordering rules."""

import json
from dataclasses import dataclass
from typing import Any

USER = "user"
ASSISTANT = "assistant"
TOOL_RESULT = "tool_result"

ROLES = (USER, ASSISTANT, TOOL_RESULT)


class TranscriptError(ValueError):
    """Raised when a turn would break the request/result pairing rules."""


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    tool_name: str
    arguments: Any


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    output: Any = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def success(cls, call_id: str, output: Any) -> "ToolCallResult":
        return cls(call_id=call_id, output=output)

    @classmethod
    def failure(cls, call_id: str, kind: str, message: str) -> "ToolCallResult":
        return cls(call_id=call_id, error=message, error_kind=kind)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def as_text(self) -> str:
        """Render the payload the way it is sent back to the model."""
        if self.is_error:
            return f"error: {self.error_kind}: {self.error}"
        if self.output is None:
            return ""
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output)


@dataclass(frozen=True)
class Turn:
    role: str
    content: tuple = ()

    def __post_init__(self):
        if self.role not in ROLES:
            raise TranscriptError(f"unknown role {self.role!r}")
        # Accept any iterable of blocks, store a tuple.
        object.__setattr__(self, "content", tuple(self.content))

    @classmethod
    def user(cls, text: str) -> "Turn":
        return cls(USER, (TextBlock(text),))

    @classmethod
    def assistant(cls, text: str) -> "Turn":
        return cls(ASSISTANT, (TextBlock(text),))

    @classmethod
    def assistant_calls(cls, calls) -> "Turn":
        return cls(ASSISTANT, tuple(calls))

    @classmethod
    def tool_results(cls, results) -> "Turn":
        return cls(TOOL_RESULT, tuple(results))

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_calls(self) -> tuple[ToolCallRequest, ...]:
        return tuple(b for b in self.content if isinstance(b, ToolCallRequest))

    @property
    def results(self) -> tuple[ToolCallResult, ...]:
        return tuple(b for b in self.content if isinstance(b, ToolCallResult))


class Conversation:
    """One interactive session: the transcript plus the client and registry it talks to.

    The turn list is append-only. append() checks that every assistant turn
    carrying tool calls is answered by exactly one tool_result turn whose
    results match the requests one-to-one, in order.
    """

    def __init__(self, client, registry, *, system_prompt: str | None = None):
        self.client = client
        self.registry = registry
        self.system_prompt = system_prompt
        self._turns: list[Turn] = []
        self._call_ids: set[str] = set()

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def last(self) -> Turn | None:
        return self._turns[-1] if self._turns else None

    def call_ids(self) -> frozenset[str]:
        return frozenset(self._call_ids)

    def pending_calls(self) -> tuple[ToolCallRequest, ...]:
        """Requests from the last assistant turn that have no results yet."""
        last = self.last
        if last is not None and last.role == ASSISTANT:
            return last.tool_calls
        return ()

    def count(self, role: str) -> int:
        return sum(1 for t in self._turns if t.role == role)

    def append(self, turn: Turn) -> None:
        pending = self.pending_calls()

        if turn.role == TOOL_RESULT:
            if not pending:
                raise TranscriptError(
                    "tool_result turn must follow an assistant turn with tool calls"
                )
            results = turn.results
            if len(results) != len(turn.content):
                raise TranscriptError("tool_result turn may only hold tool results")
            expected = [r.call_id for r in pending]
            got = [r.call_id for r in results]
            if got != expected:
                raise TranscriptError(
                    f"tool results {got} do not match pending calls {expected}"
                )
        else:
            if pending:
                raise TranscriptError(
                    f"{len(pending)} tool call(s) still awaiting results"
                )
            if turn.role == USER and turn.tool_calls:
                raise TranscriptError("user turn cannot carry tool calls")
            if turn.results:
                raise TranscriptError(f"{turn.role} turn cannot carry tool results")

        new_ids = [c.call_id for c in turn.tool_calls]
        if len(set(new_ids)) != len(new_ids) or self._call_ids.intersection(new_ids):
            raise TranscriptError(f"duplicate call id in {new_ids}")

        self._turns.append(turn)
        self._call_ids.update(new_ids)
