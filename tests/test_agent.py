"""Tests for the agent loop: rounds, tool dispatch, errors, continuation and retries."""

import pytest

from mdcode import agent, fmt
from mdcode.agent import continue_turn, handle_tool_call, run_turn, run_with_retries
from mdcode.models import FinalText, ModelClient, ToolCalls
from mdcode.report import (
    AuthError,
    InvalidInput,
    MalformedResponse,
    RateLimited,
    ReportCollector,
    RequestRejected,
    RoundLimitExceeded,
    TransportError,
)
from mdcode.tools import LocalFilesystem, Param, ToolSpec, build_registry
from mdcode.transcript import (
    ASSISTANT,
    TOOL_RESULT,
    USER,
    Conversation,
    ToolCallRequest,
    Turn,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class ScriptedClient(ModelClient):
    """Returns queued responses in order; exceptions in the queue are raised."""

    name = "Scripted"

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def complete(self, turns, tool_schemas, *, system_prompt=None):
        self.requests.append(
            {"turns": turns, "tools": tool_schemas, "system_prompt": system_prompt}
        )
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class AlwaysListClient(ModelClient):
    name = "Looper"

    def __init__(self):
        self.n = 0

    def complete(self, turns, tool_schemas, *, system_prompt=None):
        self.n += 1
        return ToolCalls((ToolCallRequest(f"loop_{self.n}", "list_files", {}),))


class RecordingFilesystem(LocalFilesystem):
    def __init__(self, base_dir):
        super().__init__(base_dir)
        self.ops = []

    def read(self, path):
        self.ops.append(("read", path))
        return super().read(path)

    def list(self, path=".", recursive=True):
        self.ops.append(("list", path))
        return super().list(path, recursive)

    def write(self, path, content):
        self.ops.append(("write", path))
        return super().write(path, content)


def _calls(*specs):
    return ToolCalls(
        tuple(ToolCallRequest(cid, name, args) for cid, name, args in specs)
    )


def _conversation(tmp_path, responses, fs=None, system_prompt=None):
    fs = fs or LocalFilesystem(str(tmp_path))
    client = ScriptedClient(responses)
    return Conversation(client, build_registry(fs), system_prompt=system_prompt)


def _assert_paired(conv):
    turns = conv.turns
    for i, turn in enumerate(turns):
        if turn.role == ASSISTANT and turn.tool_calls:
            nxt = turns[i + 1]
            assert nxt.role == TOOL_RESULT
            assert [r.call_id for r in nxt.results] == [c.call_id for c in turn.tool_calls]
        if turn.role == TOOL_RESULT:
            assert turns[i - 1].role == ASSISTANT and turns[i - 1].tool_calls


# ---------------------------------------------------------------------------
# Basic flow
# ---------------------------------------------------------------------------


class TestRunTurn:
    def test_plain_answer(self, tmp_path):
        conv = _conversation(tmp_path, [FinalText("Hello!")])
        assert run_turn(conv, "  hi there \n") == "Hello!"
        assert [t.role for t in conv.turns] == [USER, ASSISTANT]
        assert conv.turns[0].text == "hi there"

    def test_list_files_scenario(self, tmp_path):
        (tmp_path / "a.txt").write_text("A")
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.rs").write_text("fn main() {}")
        conv = _conversation(
            tmp_path,
            [
                _calls(("t1", "list_files", {"path": "."})),
                FinalText("There are two files."),
            ],
        )
        answer = run_turn(conv, "list files in .")
        assert answer == "There are two files."
        roles = [t.role for t in conv.turns]
        assert roles == [USER, ASSISTANT, TOOL_RESULT, ASSISTANT]
        result = conv.turns[2].results[0]
        assert result.call_id == "t1"
        assert result.output == ["a.txt", "src/", "src/main.rs"]

    def test_model_sees_tool_results(self, tmp_path):
        (tmp_path / "notes.md").write_text("remember the milk")
        conv = _conversation(
            tmp_path,
            [_calls(("r1", "read_file", {"path": "notes.md"})), FinalText("milk")],
            system_prompt="be helpful",
        )
        run_turn(conv, "what do my notes say?")
        second = conv.client.requests[1]
        assert second["system_prompt"] == "be helpful"
        assert second["turns"][-1].results[0].output == "remember the milk"
        names = [s["function"]["name"] for s in second["tools"]]
        assert names == ["read_file", "list_files", "edit_file"]

    def test_call_ids_keep_order_within_round(self, tmp_path):
        (tmp_path / "x.txt").write_text("x")
        conv = _conversation(
            tmp_path,
            [
                _calls(
                    ("c", "read_file", {"path": "x.txt"}),
                    ("a", "list_files", {}),
                    ("b", "read_file", {"path": "missing"}),
                ),
                FinalText("done"),
            ],
        )
        run_turn(conv, "go")
        results = conv.turns[2].results
        assert [r.call_id for r in results] == ["c", "a", "b"]
        assert results[2].error_kind == "NotFound"

    def test_multi_round_pairs_adjacent(self, tmp_path):
        conv = _conversation(
            tmp_path,
            [
                _calls(("e1", "edit_file", {"path": "src/lib.rs", "content": "pub fn f() {}"})),
                _calls(("r1", "read_file", {"path": "src/lib.rs"}), ("l1", "list_files", {})),
                FinalText("created"),
            ],
        )
        run_turn(conv, "create a lib")
        assert (tmp_path / "src" / "lib.rs").read_text() == "pub fn f() {}"
        assert len(conv.turns) == 6
        _assert_paired(conv)

    def test_tool_errors_never_abort(self, tmp_path):
        conv = _conversation(
            tmp_path,
            [
                _calls(
                    ("u1", "rm_rf", {"path": "/"}),
                    ("i1", "read_file", {}),
                    ("i2", "read_file", "{oops"),
                    ("p1", "read_file", {"path": "../../etc/passwd"}),
                ),
                FinalText("sorry"),
            ],
        )
        assert run_turn(conv, "break things") == "sorry"
        kinds = [r.error_kind for r in conv.turns[2].results]
        assert kinds == ["UnknownTool", "InvalidArguments", "InvalidArguments", "PathOutsideBase"]

    def test_unknown_tool_never_touches_filesystem(self, tmp_path):
        fs = RecordingFilesystem(str(tmp_path))
        conv = _conversation(
            tmp_path, [_calls(("z", "delete_file", {"path": "a"})), FinalText("ok")], fs=fs
        )
        run_turn(conv, "delete a")
        assert fs.ops == []
        assert conv.turns[2].results[0].error_kind == "UnknownTool"

    def test_empty_tool_calls_is_final_text(self, tmp_path):
        conv = _conversation(tmp_path, [ToolCalls(())])
        assert run_turn(conv, "hi") == ""
        assert conv.last.role == ASSISTANT

    def test_conversation_continues_across_turns(self, tmp_path):
        conv = _conversation(tmp_path, [FinalText("one"), FinalText("two")])
        run_turn(conv, "first")
        run_turn(conv, "second")
        assert [t.role for t in conv.turns] == [USER, ASSISTANT, USER, ASSISTANT]
        assert len(conv.client.requests[1]["turns"]) == 3


# ---------------------------------------------------------------------------
# Terminal conditions
# ---------------------------------------------------------------------------


class TestTerminalConditions:
    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_empty_input(self, tmp_path, text):
        conv = _conversation(tmp_path, [])
        with pytest.raises(InvalidInput):
            run_turn(conv, text)
        assert conv.turns == ()

    def test_round_limit(self, tmp_path):
        conv = Conversation(AlwaysListClient(), build_registry(LocalFilesystem(str(tmp_path))))
        with pytest.raises(RoundLimitExceeded) as exc_info:
            run_turn(conv, "loop forever", max_rounds=1)
        assert exc_info.value.rounds == 1
        assert [t.role for t in conv.turns] == [USER, ASSISTANT, TOOL_RESULT]

    def test_round_limit_keeps_all_rounds(self, tmp_path):
        client = AlwaysListClient()
        conv = Conversation(client, build_registry(LocalFilesystem(str(tmp_path))))
        with pytest.raises(RoundLimitExceeded):
            run_turn(conv, "loop", max_rounds=3)
        assert client.n == 3
        assert len(conv.turns) == 7
        _assert_paired(conv)

    def test_zero_rounds_rejected(self, tmp_path):
        conv = _conversation(tmp_path, [FinalText("x")])
        with pytest.raises(InvalidInput):
            run_turn(conv, "hi", max_rounds=0)

    @pytest.mark.parametrize(
        "error",
        [
            TransportError("down"),
            AuthError("bad key"),
            RateLimited("slow"),
            MalformedResponse("junk"),
        ],
    )
    def test_model_errors_propagate_unchanged(self, tmp_path, error):
        conv = _conversation(tmp_path, [error])
        with pytest.raises(type(error)) as exc_info:
            run_turn(conv, "hi")
        assert exc_info.value is error
        assert [t.role for t in conv.turns] == [USER]

    def test_failure_after_a_round_keeps_completed_round(self, tmp_path):
        conv = _conversation(
            tmp_path, [_calls(("l1", "list_files", {})), TransportError("reset")]
        )
        with pytest.raises(TransportError):
            run_turn(conv, "hi")
        assert [t.role for t in conv.turns] == [USER, ASSISTANT, TOOL_RESULT]

    def test_interrupt_during_model_call(self, tmp_path):
        conv = _conversation(
            tmp_path, [_calls(("l1", "list_files", {})), KeyboardInterrupt()]
        )
        with pytest.raises(KeyboardInterrupt):
            run_turn(conv, "hi")
        assert [t.role for t in conv.turns] == [USER, ASSISTANT, TOOL_RESULT]
        assert conv.pending_calls() == ()

    def test_interrupt_during_dispatch_leaves_no_partial_round(self, tmp_path):
        def _boom(args):
            raise KeyboardInterrupt

        registry = build_registry(
            LocalFilesystem(str(tmp_path)),
            extra=[ToolSpec("slow", "never finishes", (), _boom)],
        )
        client = ScriptedClient([_calls(("l1", "list_files", {}), ("s1", "slow", {}))])
        conv = Conversation(client, registry)
        with pytest.raises(KeyboardInterrupt):
            run_turn(conv, "hi")
        assert [t.role for t in conv.turns] == [USER]

    def test_unexpected_response_type(self, tmp_path):
        conv = _conversation(tmp_path, ["just a string"])
        with pytest.raises(MalformedResponse):
            run_turn(conv, "hi")


# ---------------------------------------------------------------------------
# handle_tool_call
# ---------------------------------------------------------------------------


class TestHandleToolCall:
    def test_metadata(self, tmp_path):
        (tmp_path / "f.txt").write_text("body")
        registry = build_registry(LocalFilesystem(str(tmp_path)))
        result, meta = handle_tool_call(
            ToolCallRequest("c1", "read_file", {"path": "f.txt"}), registry, False
        )
        assert result.output == "body"
        assert meta["name"] == "read_file"
        assert meta["arguments"] == {"path": "f.txt"}
        assert meta["succeeded"] is True
        assert meta["elapsed"] >= 0

    def test_unexpected_exception_becomes_error_result(self, tmp_path):
        def _bug(args):
            raise RuntimeError("kaput")

        registry = build_registry(
            LocalFilesystem(str(tmp_path)),
            extra=[ToolSpec("buggy", "raises", (Param("x", "string", "x", required=False),), _bug)],
        )
        result, meta = handle_tool_call(ToolCallRequest("c1", "buggy", {}), registry, False)
        assert meta["succeeded"] is False
        assert result.error_kind == "RuntimeError"
        assert "kaput" in result.error

    def test_verbose_output(self, tmp_path, capsys):
        fmt.init(color=False)
        registry = build_registry(LocalFilesystem(str(tmp_path)))
        handle_tool_call(ToolCallRequest("c1", "read_file", {"path": "nope"}), registry, True)
        err = capsys.readouterr().err
        assert "read_file" in err
        assert "NotFound" in err


# ---------------------------------------------------------------------------
# continue_turn
# ---------------------------------------------------------------------------


class TestContinueTurn:
    def test_empty_conversation(self, tmp_path):
        with pytest.raises(InvalidInput):
            continue_turn(_conversation(tmp_path, []))

    def test_after_final_answer(self, tmp_path):
        conv = _conversation(tmp_path, [FinalText("done")])
        run_turn(conv, "hi")
        with pytest.raises(InvalidInput):
            continue_turn(conv)

    def test_resume_after_round_limit(self, tmp_path):
        conv = _conversation(
            tmp_path,
            [_calls(("l1", "list_files", {})), _calls(("l2", "list_files", {})), FinalText("ok")],
        )
        with pytest.raises(RoundLimitExceeded):
            run_turn(conv, "hi", max_rounds=1)
        assert continue_turn(conv, max_rounds=5) == "ok"
        assert conv.count(USER) == 1
        _assert_paired(conv)

    def test_resume_after_model_error(self, tmp_path):
        conv = _conversation(tmp_path, [TransportError("x"), FinalText("back")])
        with pytest.raises(TransportError):
            run_turn(conv, "hi")
        assert continue_turn(conv) == "back"
        assert [t.role for t in conv.turns] == [USER, ASSISTANT]


# ---------------------------------------------------------------------------
# run_with_retries
# ---------------------------------------------------------------------------


class TestRunWithRetries:
    @pytest.fixture
    def sleeps(self, monkeypatch):
        recorded = []
        monkeypatch.setattr(agent.time, "sleep", recorded.append)
        return recorded

    def test_retries_transient_errors(self, tmp_path, sleeps):
        conv = _conversation(
            tmp_path, [RateLimited("slow"), TransportError("reset"), FinalText("finally")]
        )
        answer = run_with_retries(conv, "hi", retries=2, backoff=1.5)
        assert answer == "finally"
        assert sleeps == [1.5, 3.0]
        assert conv.count(USER) == 1

    def test_gives_up_after_retries(self, tmp_path, sleeps):
        conv = _conversation(tmp_path, [TransportError("a"), TransportError("b")])
        with pytest.raises(TransportError, match="b"):
            run_with_retries(conv, "hi", retries=1)
        assert sleeps == [2.0]

    def test_zero_retries(self, tmp_path, sleeps):
        conv = _conversation(tmp_path, [RateLimited("slow")])
        with pytest.raises(RateLimited):
            run_with_retries(conv, "hi", retries=0)
        assert sleeps == []

    def test_auth_error_not_retried(self, tmp_path, sleeps):
        conv = _conversation(tmp_path, [AuthError("nope"), FinalText("unused")])
        with pytest.raises(AuthError):
            run_with_retries(conv, "hi")
        assert sleeps == []

    def test_rejected_request_not_retried(self, tmp_path, sleeps):
        conv = _conversation(tmp_path, [RequestRejected("unknown model"), FinalText("unused")])
        with pytest.raises(RequestRejected):
            run_with_retries(conv, "hi")
        assert sleeps == []

    def test_retries_recorded_in_report(self, tmp_path, sleeps):
        report = ReportCollector()
        conv = _conversation(tmp_path, [RateLimited("slow"), FinalText("ok")])
        run_with_retries(conv, "hi", report=report)
        assert report.retries == 1
        assert report.llm_calls == 2


# ---------------------------------------------------------------------------
# Reporting and verbose output
# ---------------------------------------------------------------------------


class TestReporting:
    def test_report_counts_rounds_and_tools(self, tmp_path):
        report = ReportCollector()
        conv = _conversation(
            tmp_path,
            [
                _calls(("l1", "list_files", {}), ("r1", "read_file", {"path": "nope"})),
                FinalText("done"),
            ],
        )
        run_turn(conv, "hi", report=report)
        data = report.build_report(
            task="hi",
            model="m",
            provider="claude",
            settings={},
            outcome="success",
            answer="done",
            exit_code=0,
        )
        stats = data["stats"]
        assert stats["rounds"] == 2
        assert stats["llm_calls"] == 2
        assert stats["tool_calls_succeeded"] == 1
        assert stats["tool_calls_failed"] == 1
        assert stats["tool_calls_by_name"]["read_file"] == {"succeeded": 0, "failed": 1}

    def test_verbose_round_output(self, tmp_path, capsys, monkeypatch):
        monkeypatch.setattr(agent, "estimate_tokens", lambda turns, tools=None: 42)
        fmt.init(color=False)
        conv = _conversation(tmp_path, [_calls(("l1", "list_files", {})), FinalText("done")])
        run_turn(conv, "hi", max_rounds=4, verbose=True)
        captured = capsys.readouterr()
        assert "Round 1/4" in captured.err
        assert "Round 2/4" in captured.err
        assert "list_files" in captured.err
        assert captured.out == ""
