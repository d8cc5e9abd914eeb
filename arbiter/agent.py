"""CLI entry point and the LiteLLM model adapter for the reasoning control loop."""

import argparse
import contextlib
import json
import logging
import os
import re
import sys
from importlib import metadata

from rich.console import Console
from rich.logging import RichHandler

from . import fmt
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .models import ModelResponse, TaskStatus, ToolCall
from .report import AgentError, ConfigError, ContextOverflowError, ReportCollector

logger = logging.getLogger(__name__)

PROVIDERS = ("lmstudio", "huggingface", "openrouter", "generic")

LMSTUDIO_DEFAULT_BASE = "http://127.0.0.1:1234"

_API_KEY_ENV = {
    "huggingface": "HF_TOKEN",
    "openrouter": "OPENROUTER_API_KEY",
    "generic": "OPENAI_API_KEY",
}

DEFAULT_SYSTEM_PROMPT = (
    "You are a careful coding assistant. Answer the task directly. "
    "When you use tools, call them with complete JSON arguments. "
    "When the task is finished, say so plainly and summarize what was done."
)

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


# -- Provider routing --------------------------------------------------------


def resolve_provider(
    provider: str,
    model: str | None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> tuple[str, dict]:
    """Return ``(model_str, llm_kwargs)`` for a LiteLLM completion call.

    Raises ConfigError when the model, API key or base URL the provider
    needs is missing.
    """
    if not model:
        raise ConfigError(f"--model is required when --provider is {provider}")

    match provider:
        case "lmstudio":
            base = (base_url or LMSTUDIO_DEFAULT_BASE).rstrip("/")
            return f"openai/{model}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}
        case "huggingface":
            bare_id = model.removeprefix("huggingface/")
            if "/" not in bare_id:
                raise ConfigError(
                    "HuggingFace model must be in org/model format (e.g. zai-org/GLM-5)"
                )
            model_str = f"huggingface/{bare_id}"
        case "openrouter":
            # Strip only a doubled prefix; "openrouter/free" is a real model id.
            bare_id = (
                model[len("openrouter/") :]
                if model.startswith("openrouter/openrouter/")
                else model
            )
            model_str = f"openrouter/{bare_id}"
        case "generic":
            if not base_url:
                raise ConfigError("--base-url is required when --provider is generic")
            model_str = f"openai/{model}"
        case _:
            raise ConfigError(f"unknown provider {provider!r}")

    env_var = _API_KEY_ENV[provider]
    key = api_key or os.environ.get(env_var)
    if not key:
        if provider != "generic":
            raise ConfigError(
                f"--api-key or {env_var} env var required for {provider} provider"
            )
        key = "none"
    kwargs = {"api_key": key}
    if base_url:
        kwargs["api_base"] = base_url
    return model_str, kwargs


# -- Model calls -------------------------------------------------------------


def call_llm(
    model_str: str,
    messages: list[dict],
    *,
    llm_kwargs: dict,
    max_output_tokens: int,
    temperature: float | None = None,
    tools: list | None = None,
    verbose: bool = False,
):
    """Call LiteLLM once. Returns (message, finish_reason)."""
    import litellm

    litellm.suppress_debug_info = True

    if verbose:
        extra = f", temperature={temperature}" if temperature is not None else ""
        fmt.model_info(
            f"Calling model {model_str} with max_tokens={max_output_tokens}{extra}"
        )

    completion_kwargs = dict(
        model=model_str,
        messages=messages,
        max_tokens=max_output_tokens,
        **llm_kwargs,
    )
    if tools:
        completion_kwargs["tools"] = tools
        completion_kwargs["tool_choice"] = "auto"
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    try:
        response = litellm.completion(**completion_kwargs)
    except litellm.ContextWindowExceededError:
        raise ContextOverflowError("context window exceeded (typed)")
    except litellm.BadRequestError as e:
        if _CONTEXT_OVERFLOW_RE.search(str(e)):
            raise ContextOverflowError(f"context window exceeded (inferred): {e}")
        raise AgentError(f"LLM call failed: {e}")
    except Exception as e:
        raise AgentError(f"LLM call failed: {e}")

    choice = response.choices[0]
    return choice.message, choice.finish_reason


def parse_tool_calls(raw_calls) -> list[ToolCall]:
    """Convert provider tool calls into ToolCall values.

    Arguments that are not valid JSON are kept as the raw string so the
    quality evaluator can flag the call as malformed.
    """
    calls = []
    for tc in raw_calls or []:
        fn = getattr(tc, "function", None)
        raw_args = getattr(fn, "arguments", None)
        if isinstance(raw_args, dict):
            args = raw_args
        elif not raw_args:
            args = {}
        else:
            try:
                args = json.loads(raw_args)
            except json.JSONDecodeError:
                logger.debug("unparseable tool arguments: %.200s", raw_args)
                args = raw_args
        calls.append(
            ToolCall(
                id=getattr(tc, "id", None) or "",
                name=getattr(fn, "name", None) or "",
                arguments=args,
            )
        )
    return calls


def to_model_response(message, finish_reason: str | None) -> ModelResponse:
    return ModelResponse(
        text=getattr(message, "content", None) or "",
        tool_calls=parse_tool_calls(getattr(message, "tool_calls", None)),
        finish_reason=finish_reason,
    )


def make_model_call(
    model_str: str,
    llm_kwargs: dict,
    *,
    max_output_tokens: int,
    temperature: float | None = None,
    tools: list | None = None,
    verbose: bool = False,
):
    """Bind provider settings into the ``call_model(messages)`` collaborator."""

    def call_model(messages: list[dict]) -> ModelResponse:
        spinner = fmt.llm_spinner() if verbose else contextlib.nullcontext()
        with spinner:
            message, finish_reason = call_llm(
                model_str,
                messages,
                llm_kwargs=llm_kwargs,
                max_output_tokens=max_output_tokens,
                temperature=temperature,
                tools=tools,
                verbose=verbose,
            )
        return to_model_response(message, finish_reason)

    return call_model


# -- CLI ---------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that the config file can set default to ``_UNSET`` so that
    ``apply_config_to_args`` can tell them apart from explicit flags.
    """
    parser = argparse.ArgumentParser(
        prog="arbiter",
        usage="%(prog)s [options] <question>",
        description="Run a coding task through a quality-checked, self-correcting reasoning loop.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider: lmstudio (local), huggingface, openrouter, or generic (OpenAI-compatible).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier.",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model call (default: 4096).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window of the model, in tokens.",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--token-budget",
        type=int,
        default=_UNSET,
        help="Token budget for memories and compressed context (default: 8000).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum reasoning loop iterations (default: 20).",
    )
    parser.add_argument(
        "--memory-capacity",
        type=int,
        default=_UNSET,
        help="Maximum number of memories kept per session (default: 1000).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="System prompt to include.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for config lookup and validation (default: current directory).",
    )
    parser.add_argument(
        "--expect",
        action="append",
        default=[],
        metavar="FILE",
        help="A file the task is expected to produce (repeatable). Checked on completion.",
    )
    parser.add_argument(
        "--test-command",
        default=_UNSET,
        help="Command that must succeed for the task to count as complete.",
    )
    parser.add_argument(
        "--no-validate",
        dest="validate",
        action="store_false",
        default=_UNSET,
        help="Skip completion validation checks.",
    )
    parser.add_argument(
        "--report",
        metavar="FILE",
        default=None,
        help="Write a JSON report of the run to FILE.",
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
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log control-loop internals to stderr.",
    )
    return parser


def _setup_logging(debug: bool) -> None:
    if not debug:
        return
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    # LiteLLM and its HTTP stack are chatty at DEBUG.
    for name in ("LiteLLM", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("arbiter")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    if args.question is None:
        parser.error("question is required")

    try:
        config = load_config(args.base_dir)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)
    _setup_logging(args.debug)

    if args.max_output_tokens > args.max_context_tokens:
        parser.error("--max-output-tokens must be <= --max-context-tokens.")

    report = ReportCollector() if args.report else None

    def _write_report(
        outcome,
        answer=None,
        exit_code=0,
        iterations=None,
        error_message=None,
        model_id="unknown",
        reason=None,
        confidence=None,
        escalation_question=None,
    ):
        if not report:
            return
        effective = iterations if iterations is not None else report.max_iteration_seen
        report.finalize(
            task=args.question or "",
            model=model_id,
            provider=args.provider,
            settings={
                "temperature": args.temperature,
                "max_output_tokens": args.max_output_tokens,
                "max_context_tokens": args.max_context_tokens,
                "token_budget": args.token_budget,
                "max_iterations": args.max_iterations,
                "auto_validate": args.validate,
                "expected_outputs": list(args.expect),
                "test_command": args.test_command,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            iterations=effective,
            error_message=error_message,
            reason=reason,
            confidence=confidence,
            escalation_question=escalation_question,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report(
            "error",
            exit_code=1,
            error_message=str(e),
            model_id=args.model or "unknown",
        )
        sys.exit(1)
    if exit_code:
        sys.exit(exit_code)


def _run_main(args, report, _write_report) -> int:
    from .session import Session

    session = Session(
        base_dir=args.base_dir,
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_output_tokens=args.max_output_tokens,
        max_context_tokens=args.max_context_tokens,
        temperature=args.temperature,
        token_budget=args.token_budget,
        max_iterations=args.max_iterations,
        available_tools=args.available_tools,
        auto_validate=args.validate,
        memory_capacity=args.memory_capacity,
        system_prompt=args.system_prompt,
        test_command=args.test_command,
        verbose=args.verbose,
    )
    result = session.run(args.question, expected_outputs=args.expect, collector=report)
    task = result.result

    if result.status == TaskStatus.COMPLETE:
        if result.answer:
            print(result.answer)
        exit_code = 0
    else:
        exit_code = 2
        if task.escalation_question:
            fmt.warning(f"needs guidance: {task.escalation_question}")
        else:
            fmt.warning(f"task {result.status.lower()}: {task.reason}")

    _write_report(
        result.status.lower(),
        answer=task.final_response or None,
        exit_code=exit_code,
        iterations=task.iterations,
        model_id=session.model_string,
        reason=task.reason,
        confidence=task.confidence,
        escalation_question=task.escalation_question,
    )
    return exit_code
