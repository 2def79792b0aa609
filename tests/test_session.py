"""Tests for the programmatic Session API."""

from unittest.mock import patch

import pytest

from mdcode import Result, Session
from mdcode.models import FinalText, ModelClient, ToolCalls
from mdcode.report import AuthError
from mdcode.transcript import ASSISTANT, TOOL_RESULT, USER, ToolCallRequest


class ScriptedClient(ModelClient):
    name = "Scripted"

    def __init__(self, responses):
        self.responses = list(responses)
        self.seen = []

    def complete(self, turns, tool_schemas, *, system_prompt=None):
        self.seen.append((len(turns), system_prompt))
        return self.responses.pop(0)


def _list_call(cid):
    return ToolCalls((ToolCallRequest(cid, "list_files", {}),))


class TestSession:
    def test_run_returns_result(self, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        client = ScriptedClient([_list_call("l1"), FinalText("one file")])
        result = Session(base_dir=str(tmp_path), client=client).run("list files")
        assert isinstance(result, Result)
        assert result.answer == "one file"
        assert result.exhausted is False
        assert [t.role for t in result.turns] == [USER, ASSISTANT, TOOL_RESULT, ASSISTANT]
        assert result.turns[2].results[0].output == ["a.txt"]
        assert result.report is None

    def test_run_is_independent(self, tmp_path):
        client = ScriptedClient([FinalText("a"), FinalText("b")])
        session = Session(base_dir=str(tmp_path), client=client)
        session.run("first")
        second = session.run("second")
        assert len(second.turns) == 2
        assert [n for n, _ in client.seen] == [1, 1]

    def test_ask_shares_context(self, tmp_path):
        client = ScriptedClient([FinalText("a"), FinalText("b")])
        session = Session(base_dir=str(tmp_path), client=client)
        session.ask("first")
        result = session.ask("second")
        assert len(result.turns) == 4
        assert [n for n, _ in client.seen] == [1, 3]

    def test_reset(self, tmp_path):
        client = ScriptedClient([FinalText("a"), FinalText("b")])
        session = Session(base_dir=str(tmp_path), client=client)
        session.ask("first")
        session.reset()
        assert len(session.ask("again").turns) == 2

    def test_exhausted(self, tmp_path):
        client = ScriptedClient([_list_call("l1"), _list_call("l2")])
        result = Session(base_dir=str(tmp_path), client=client, max_rounds=2).run("loop")
        assert result.exhausted is True
        assert result.answer is None
        assert len(result.turns) == 5

    def test_report(self, tmp_path):
        client = ScriptedClient([_list_call("l1"), FinalText("done")])
        result = Session(base_dir=str(tmp_path), client=client).run("go", report=True)
        assert result.report["result"]["outcome"] == "success"
        assert result.report["stats"]["tool_calls_total"] == 1

    def test_system_prompt(self, tmp_path):
        client = ScriptedClient([FinalText("x"), FinalText("y")])
        Session(base_dir=str(tmp_path), client=client, system_prompt="terse").run("q")
        Session(base_dir=str(tmp_path), client=client, no_system_prompt=True).run("q")
        assert client.seen[0][1] == "terse"
        assert client.seen[1][1] is None

    def test_default_system_prompt_loaded(self, tmp_path):
        client = ScriptedClient([FinalText("x")])
        Session(base_dir=str(tmp_path), client=client).run("q")
        assert "read_file" in client.seen[0][1]

    def test_missing_key_raises_before_network(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with patch("litellm.completion") as mock_comp:
            with pytest.raises(AuthError):
                Session(base_dir=str(tmp_path), provider="openai").run("hi")
            mock_comp.assert_not_called()

    def test_provider_session_through_litellm(self, tmp_path, monkeypatch):
        from types import SimpleNamespace

        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        monkeypatch.delenv("OPENAI_MODEL_NAME", raising=False)
        msg = SimpleNamespace(content="hi there", tool_calls=None)
        resp = SimpleNamespace(choices=[SimpleNamespace(message=msg)])
        with patch("litellm.completion", return_value=resp) as mock_comp:
            result = Session(base_dir=str(tmp_path), provider="openai").run("hi")
        assert result.answer == "hi there"
        assert mock_comp.call_args[1]["model"] == "openai/gpt-4.1"
