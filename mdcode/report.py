"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for terminal runtime failures."""


class InvalidInput(AgentError):
    """The caller supplied unusable input (e.g. an empty message)."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown provider, bad config file, etc.)."""


class RoundLimitExceeded(AgentError):
    """The model kept requesting tools past the round bound."""

    def __init__(self, rounds: int):
        super().__init__(f"round limit reached after {rounds} rounds")
        self.rounds = rounds


class ModelError(AgentError):
    """Base class for failures surfaced by a model client."""


class TransportError(ModelError):
    """Network, timeout or provider-side failure."""


class AuthError(ModelError):
    """Missing or rejected credential."""


class RateLimited(ModelError):
    """The provider asked us to slow down."""


class MalformedResponse(ModelError):
    """The provider reply could not be turned into text or tool calls."""


class RequestRejected(ModelError):
    """The provider refused the request itself (unknown model, context too long)."""


class ToolError(Exception):
    """A tool call failed. Always converted into an error result, never terminal."""

    kind = "ToolError"


class UnknownTool(ToolError):
    kind = "UnknownTool"


class InvalidArguments(ToolError):
    kind = "InvalidArguments"


class CapabilityError(ToolError):
    kind = "CapabilityError"


class NotFound(CapabilityError):
    kind = "NotFound"


class NotReadable(CapabilityError):
    kind = "NotReadable"


class NotWritable(CapabilityError):
    kind = "NotWritable"


class PathOutsideBase(CapabilityError):
    kind = "PathOutsideBase"


class DuplicateToolName(ValueError):
    """A tool with this name is already registered."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.llm_calls = 0
        self.retries = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_round_seen = 0

    def record_llm_call(
        self,
        round_no: int,
        duration: float,
        outcome: str,
        *,
        error: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        if round_no > self.max_round_seen:
            self.max_round_seen = round_no
        event = {
            "round": round_no,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "outcome": outcome,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_tool_call(
        self,
        round_no: int,
        name: str,
        arguments,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "round": round_no,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_retry(self, attempt: int, delay: float, reason: str):
        self.retries += 1
        self.events.append(
            {
                "type": "retry",
                "attempt": attempt,
                "delay_s": round(delay, 3),
                "reason": reason,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "rounds": self.max_round_seen,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "llm_calls": self.llm_calls,
                "retries": self.retries,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
