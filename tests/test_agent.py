"""Tests for provider routing, the LiteLLM adapter, and the CLI entry point."""

import json
import sys
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from arbiter import agent
from arbiter.agent import (
    call_llm,
    make_model_call,
    parse_tool_calls,
    resolve_provider,
    to_model_response,
)
from arbiter.models import ModelResponse, ToolCall
from arbiter.report import AgentError, ConfigError, ContextOverflowError

ANSWER = (
    "The parser crashes because the config loader returns None; "
    "check the value before use."
)


def _response(content="ok", tool_calls=None, finish_reason="stop"):
    return SimpleNamespace(
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=content, tool_calls=tool_calls),
                finish_reason=finish_reason,
            )
        ]
    )


def _raw_call(name, arguments, call_id="call_1"):
    return SimpleNamespace(
        id=call_id, function=SimpleNamespace(name=name, arguments=arguments)
    )


# ---------------------------------------------------------------------------
# Provider routing
# ---------------------------------------------------------------------------


class TestResolveProvider:
    def test_lmstudio_default_base(self):
        model, kwargs = resolve_provider("lmstudio", "my-model")
        assert model == "openai/my-model"
        assert kwargs == {"api_base": "http://127.0.0.1:1234/v1", "api_key": "lm-studio"}

    def test_lmstudio_custom_base(self):
        _, kwargs = resolve_provider("lmstudio", "m", base_url="http://box:9999/")
        assert kwargs["api_base"] == "http://box:9999/v1"

    def test_model_required(self):
        with pytest.raises(ConfigError, match="--model is required"):
            resolve_provider("lmstudio", None)

    def test_huggingface(self, monkeypatch):
        monkeypatch.setenv("HF_TOKEN", "hf_env")
        model, kwargs = resolve_provider("huggingface", "zai-org/GLM-5")
        assert model == "huggingface/zai-org/GLM-5"
        assert kwargs == {"api_key": "hf_env"}

    def test_huggingface_prefix_not_doubled(self):
        model, _ = resolve_provider(
            "huggingface", "huggingface/zai-org/GLM-5", api_key="hf_test"
        )
        assert model == "huggingface/zai-org/GLM-5"

    def test_huggingface_needs_org(self):
        with pytest.raises(ConfigError, match="org/model"):
            resolve_provider("huggingface", "GLM-5", api_key="hf_test")

    def test_huggingface_needs_key(self, monkeypatch):
        monkeypatch.delenv("HF_TOKEN", raising=False)
        with pytest.raises(ConfigError, match="HF_TOKEN"):
            resolve_provider("huggingface", "zai-org/GLM-5")

    def test_openrouter(self, monkeypatch):
        monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
        model, kwargs = resolve_provider(
            "openrouter", "openrouter/openrouter/free", api_key="sk-or"
        )
        assert model == "openrouter/openrouter/free"
        assert kwargs == {"api_key": "sk-or"}

    def test_openrouter_plain_model(self):
        model, _ = resolve_provider("openrouter", "z-ai/glm-5", api_key="sk-or")
        assert model == "openrouter/z-ai/glm-5"

    def test_generic_requires_base_url(self):
        with pytest.raises(ConfigError, match="--base-url is required"):
            resolve_provider("generic", "gpt-x")

    def test_generic_key_optional(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        model, kwargs = resolve_provider("generic", "gpt-x", base_url="http://h/v1")
        assert model == "openai/gpt-x"
        assert kwargs == {"api_key": "none", "api_base": "http://h/v1"}

    def test_unknown_provider(self):
        with pytest.raises(ConfigError, match="unknown provider"):
            resolve_provider("nope", "m")


# ---------------------------------------------------------------------------
# call_llm
# ---------------------------------------------------------------------------


class TestCallLlm:
    def test_passes_settings(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("hi")
            message, finish = call_llm(
                "openai/m",
                [{"role": "user", "content": "q"}],
                llm_kwargs={"api_key": "k"},
                max_output_tokens=100,
                temperature=0.2,
            )
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/m"
        assert kwargs["max_tokens"] == 100
        assert kwargs["api_key"] == "k"
        assert kwargs["temperature"] == 0.2
        assert "tools" not in kwargs
        assert "tool_choice" not in kwargs
        assert message.content == "hi"
        assert finish == "stop"

    def test_tools_and_no_temperature(self):
        tools = [{"type": "function", "function": {"name": "read"}}]
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response()
            call_llm("openai/m", [], llm_kwargs={}, max_output_tokens=10, tools=tools)
        kwargs = mock_comp.call_args[1]
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"
        assert "temperature" not in kwargs

    def test_typed_overflow(self):
        import litellm

        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = litellm.ContextWindowExceededError(
                message="context length exceeded", model="m", llm_provider="openai"
            )
            with pytest.raises(ContextOverflowError):
                call_llm("openai/m", [], llm_kwargs={}, max_output_tokens=10)

    def test_inferred_overflow(self):
        import litellm

        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = litellm.BadRequestError(
                message="maximum context length is 8192 tokens",
                model="m",
                llm_provider="openai",
            )
            with pytest.raises(ContextOverflowError):
                call_llm("openai/m", [], llm_kwargs={}, max_output_tokens=10)

    def test_other_bad_request(self):
        import litellm

        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = litellm.BadRequestError(
                message="invalid request format", model="m", llm_provider="openai"
            )
            with pytest.raises(AgentError) as exc_info:
                call_llm("openai/m", [], llm_kwargs={}, max_output_tokens=10)
        assert not isinstance(exc_info.value, ContextOverflowError)

    def test_connection_failure(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = RuntimeError("connection refused")
            with pytest.raises(AgentError, match="connection refused"):
                call_llm("openai/m", [], llm_kwargs={}, max_output_tokens=10)


# ---------------------------------------------------------------------------
# Response conversion
# ---------------------------------------------------------------------------


class TestParseToolCalls:
    def test_json_arguments(self):
        calls = parse_tool_calls([_raw_call("read", '{"path": "a.py"}')])
        assert calls == [ToolCall("call_1", "read", {"path": "a.py"})]

    def test_dict_and_empty_arguments(self):
        calls = parse_tool_calls(
            [_raw_call("glob", {"pattern": "*.py"}), _raw_call("bash", "", "call_2")]
        )
        assert calls[0].arguments == {"pattern": "*.py"}
        assert calls[1].arguments == {}

    def test_invalid_json_kept_raw(self):
        [call] = parse_tool_calls([_raw_call("write", '{"path": "a.py"')])
        assert call.arguments == '{"path": "a.py"'

    def test_none(self):
        assert parse_tool_calls(None) == []

    def test_to_model_response(self):
        message = SimpleNamespace(
            content=None, tool_calls=[_raw_call("read", '{"path": "a.py"}')]
        )
        response = to_model_response(message, "tool_calls")
        assert response.text == ""
        assert response.finish_reason == "tool_calls"
        assert response.tool_calls[0].name == "read"


class TestMakeModelCall:
    def test_returns_model_response(self):
        call_model = make_model_call(
            "openai/m", {"api_key": "k"}, max_output_tokens=50, temperature=0.0
        )
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("done")
            response = call_model([{"role": "user", "content": "q"}])
        assert response == ModelResponse(text="done", tool_calls=[], finish_reason="stop")
        assert mock_comp.call_args[1]["temperature"] == 0.0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Run main() with isolated config; returns a runner taking CLI args."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

    def run(*argv):
        monkeypatch.setattr(
            sys, "argv", ["arbiter", "--base-dir", str(tmp_path), *argv]
        )
        return agent.main()

    return run


class TestMain:
    def test_answer_printed(self, cli, capsys):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response(ANSWER)
            cli("--model", "m", "-q", "why does the parser crash in config loader")
        assert capsys.readouterr().out == ANSWER + "\n"

    def test_report_written(self, cli, tmp_path):
        report_path = tmp_path / "report.json"
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response(ANSWER)
            cli(
                "--model",
                "m",
                "-q",
                "--report",
                str(report_path),
                "why does the parser crash in config loader",
            )
        data = json.loads(report_path.read_text())
        assert data["model"] == "openai/m"
        assert data["provider"] == "lmstudio"
        assert data["result"]["outcome"] == "complete"
        assert data["stats"]["iterations"] == 1
        assert data["settings"]["token_budget"] == 8000

    def test_llm_failure_exits_1(self, cli, tmp_path):
        report_path = tmp_path / "report.json"
        with patch("litellm.completion") as mock_comp:
            mock_comp.side_effect = RuntimeError("connection refused")
            with pytest.raises(SystemExit) as exc_info:
                cli("--model", "m", "-q", "--report", str(report_path), "hello there")
        assert exc_info.value.code == 1
        data = json.loads(report_path.read_text())
        assert data["result"]["outcome"] == "error"
        assert "connection refused" in data["result"]["error_message"]

    def test_missing_model_exits_1(self, cli):
        with pytest.raises(SystemExit) as exc_info:
            cli("-q", "hello there")
        assert exc_info.value.code == 1

    def test_unresolved_task_exits_2(self, cli, capsys):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response("")
            with pytest.raises(SystemExit) as exc_info:
                cli("--model", "m", "-q", "why does the parser crash in config loader")
        assert exc_info.value.code == 2
        assert capsys.readouterr().out == ""

    def test_question_required(self, cli):
        with pytest.raises(SystemExit) as exc_info:
            cli()
        assert exc_info.value.code == 2

    def test_output_tokens_checked_against_context(self, cli):
        with pytest.raises(SystemExit) as exc_info:
            cli("--max-output-tokens", "500", "--max-context-tokens", "100", "hi")
        assert exc_info.value.code == 2

    def test_init_config(self, cli, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli("--init-config", "--project")
        assert exc_info.value.code == 0
        assert "Project config" in capsys.readouterr().out

    def test_config_file_applies(self, cli, tmp_path, capsys):
        (tmp_path / "arbiter.toml").write_text('model = "from-config"\nquiet = true\n')
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _response(ANSWER)
            cli("why does the parser crash in config loader")
        assert mock_comp.call_args[1]["model"] == "openai/from-config"
        assert capsys.readouterr().out == ANSWER + "\n"
