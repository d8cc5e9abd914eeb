"""Tests for the Session library API."""

import copy

import pytest

from arbiter.agent import DEFAULT_SYSTEM_PROMPT
from arbiter.models import FailureReason, MemoryType, ModelResponse, TaskStatus, ToolCall
from arbiter.report import ConfigError, ReportCollector
from arbiter.session import Result, Session

QUERY = "why does the parser crash in config loader"
ANSWER = (
    "The parser crashes because the config loader returns None; "
    "check the value before use."
)


class ScriptedModel:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[list[dict]] = []

    def __call__(self, messages):
        self.calls.append(copy.deepcopy(messages))
        return self.responses[min(len(self.calls), len(self.responses)) - 1]


def _text(text):
    return ModelResponse(text=text, finish_reason="stop")


def _read_call():
    return ModelResponse(
        tool_calls=[ToolCall("call_1", "read", {"path": "src/app.py"})],
        finish_reason="tool_calls",
    )


# ---------------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------------


class TestRun:
    def test_returns_answer(self):
        model = ScriptedModel(_text(ANSWER))
        result = Session(call_model=model).run(QUERY)
        assert isinstance(result, Result)
        assert result.status == TaskStatus.COMPLETE
        assert result.answer == ANSWER
        assert result.report is None
        assert not result.exhausted
        assert result.messages[-1] == {"role": "assistant", "content": ANSWER}

    def test_default_system_prompt(self):
        model = ScriptedModel(_text(ANSWER))
        Session(call_model=model).run(QUERY)
        assert model.calls[0][0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}

    def test_custom_and_empty_system_prompt(self):
        model = ScriptedModel(_text(ANSWER))
        Session(call_model=model, system_prompt="be brief").run(QUERY)
        assert model.calls[0][0] == {"role": "system", "content": "be brief"}

        model = ScriptedModel(_text(ANSWER))
        Session(call_model=model, system_prompt="").run(QUERY)
        assert all(m["role"] != "system" for m in model.calls[0])

    def test_runs_are_independent(self):
        model = ScriptedModel(_text(ANSWER))
        session = Session(call_model=model)
        session.run(QUERY)
        session.run(QUERY)
        second = model.calls[1]
        assert [m["content"] for m in second if m["role"] == "user"] == [QUERY]
        assert session.memory is None

    def test_report_dict(self):
        model = ScriptedModel(_text(ANSWER))
        result = Session(call_model=model, token_budget=5000).run(QUERY, report=True)
        report = result.report
        assert report["result"]["outcome"] == "complete"
        assert report["result"]["answer"] == ANSWER
        assert report["result"]["exit_code"] == 0
        assert report["stats"]["llm_calls"] == 1
        assert report["stats"]["iterations"] == 1
        assert report["settings"]["token_budget"] == 5000

    def test_external_collector(self):
        collector = ReportCollector()
        Session(call_model=ScriptedModel(_text(ANSWER))).run(QUERY, collector=collector)
        assert collector.llm_calls == 1
        assert collector.verdicts == {"ACCEPT": 1}

    def test_exhausted(self):
        model = ScriptedModel(_read_call())
        result = Session(call_model=model, max_iterations=2).run(
            "read src/app.py and summarize it"
        )
        assert result.status == TaskStatus.FAILED
        assert result.exhausted
        assert result.answer is None
        assert result.result.reason == FailureReason.MAX_ITERATIONS_EXCEEDED

    def test_tools_unavailable_by_default(self):
        model = ScriptedModel(_read_call(), _text("src/app.py could not be read."))
        Session(call_model=model).run("read src/app.py and summarize it")
        tool_messages = [m for m in model.calls[1] if m["role"] == "tool"]
        assert "is not available" in tool_messages[0]["content"]

    def test_custom_tool_executor(self):
        calls = []

        def execute_tool(name, arguments):
            calls.append((name, arguments))
            return "def main(): pass"

        model = ScriptedModel(
            _read_call(),
            _text("src/app.py defines a main function that currently does nothing at all."),
        )
        result = Session(call_model=model, execute_tool=execute_tool).run(
            "read src/app.py and summarize it"
        )
        assert calls == [("read", {"path": "src/app.py"})]
        assert result.status == TaskStatus.COMPLETE


# ---------------------------------------------------------------------------
# ask() / reset()
# ---------------------------------------------------------------------------


class TestAsk:
    def test_shares_conversation(self):
        model = ScriptedModel(_text(ANSWER))
        session = Session(call_model=model)
        session.ask(QUERY)
        session.ask(QUERY)
        second = model.calls[1]
        assert {"role": "user", "content": QUERY} in second
        assert {"role": "assistant", "content": ANSWER} in second
        assert [m["content"] for m in second if m["role"] == "user"].count(QUERY) == 2

    def test_remembers_answers(self):
        session = Session(call_model=ScriptedModel(_text(ANSWER)))
        session.ask(QUERY)
        decisions = session.memory.find_by_type(MemoryType.DECISION)
        assert len(decisions) == 1
        assert decisions[0].content.startswith(f"Answered: {QUERY}")

    def test_reset(self):
        model = ScriptedModel(_text(ANSWER))
        session = Session(call_model=model)
        session.ask(QUERY)
        session.reset()
        assert session.memory is None
        session.ask(QUERY)
        assert [m["content"] for m in model.calls[1] if m["role"] == "user"] == [QUERY]

    def test_result_messages_are_copies(self):
        session = Session(call_model=ScriptedModel(_text(ANSWER)))
        result = session.ask(QUERY)
        result.messages.clear()
        assert session._conv_messages


# ---------------------------------------------------------------------------
# Setup and validation wiring
# ---------------------------------------------------------------------------


class TestSetup:
    def test_missing_model_raises(self):
        with pytest.raises(ConfigError, match="--model is required"):
            Session(provider="lmstudio").run(QUERY)

    def test_non_positive_budget_raises(self):
        with pytest.raises(ConfigError, match="must be positive"):
            Session(call_model=ScriptedModel(_text(ANSWER)), token_budget=0).run(QUERY)

    def test_model_string_resolved(self):
        session = Session(provider="lmstudio", model="qwen3")
        session._setup()
        assert session.model_string == "openai/qwen3"

    def test_model_string_fallback(self):
        assert Session().model_string == "unknown"
        assert Session(model="m").model_string == "m"


class TestValidationContext:
    def test_disabled(self):
        session = Session(auto_validate=False, test_command="pytest")
        assert session._validation_context(["a.py"]) is None

    def test_nothing_to_check(self):
        assert Session()._validation_context([]) is None

    def test_expected_outputs(self):
        ctx = Session()._validation_context(["notes.md"])
        assert ctx.expected_outputs == ["notes.md"]
        assert ctx.task_type == "ANSWER"
        assert not ctx.has_tests

    def test_edit_with_tools_and_tests(self):
        session = Session(tools=[{"type": "function"}], test_command="pytest -q")
        ctx = session._validation_context(["notes.md"])
        assert ctx.task_type == "EDIT"
        assert ctx.has_tests
        assert ctx.test_command == "pytest -q"

    def test_expected_output_present_completes(self, tmp_path):
        (tmp_path / "notes.md").write_text("# Notes\n")
        model = ScriptedModel(
            _text("Created notes.md with a short summary of the project and its goals.")
        )
        collector = ReportCollector()
        result = Session(call_model=model, base_dir=str(tmp_path)).run(
            "create notes.md with a summary",
            expected_outputs=["notes.md"],
            collector=collector,
        )
        assert result.status == TaskStatus.COMPLETE
        checks = [e for e in collector.events if e["type"] == "validation"]
        assert any(e["check"] == "file_exists_check" and e["passed"] for e in checks)
