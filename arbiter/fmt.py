"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

_VERDICT_STYLES = {
    "ACCEPT": "green",
    "RETRY": "yellow",
    "ESCALATE": "magenta",
    "ABORT": "bold red",
}


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Iteration structure -----------------------------------------------------


def iteration_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Iteration {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", None) else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, status: str, confidence: float) -> None:
    if status == "COMPLETE":
        _console.print(
            Text(
                f"  ✓ Task complete: {iterations} iterations, "
                f"confidence {confidence * 100:.1f}%",
                style="bold green",
            )
        )
    else:
        _console.print(
            Text(f"  Task {status.lower()} after {iterations} iterations", style="bold red")
        )


# -- Control decisions -------------------------------------------------------


def quality_verdict(verdict: str, score: float, deficiencies) -> None:
    style = _VERDICT_STYLES.get(str(verdict), "dim")
    line = Text()
    line.append(f"  [quality] {verdict}", style=style)
    line.append(f"  score={score:.2f}", style=style)
    if deficiencies:
        line.append("  " + ", ".join(sorted(str(d) for d in deficiencies)), style="dim")
    _console.print(line)


def retry_decision(tier: str, action: str, transform: str, detail: str = "") -> None:
    line = Text()
    line.append(f"  [retry {tier}] ", style="yellow")
    line.append(f"{action}", style="bold yellow")
    if transform and transform != "NONE":
        line.append(f" {transform}", style="yellow")
    if detail:
        line.append(f" {detail}", style="dim italic")
    _console.print(line)


def compression(level: str, tokens_saved: int, rules: list[str]) -> None:
    line = Text()
    line.append(f"  [compress {level}] ", style="cyan")
    line.append(f"saved ~{tokens_saved} tokens", style="dim")
    if rules:
        line.append(f" ({', '.join(rules)})", style="dim")
    _console.print(line)


def termination(status: str, confidence: float) -> None:
    line = Text()
    line.append("  [termination] ", style="blue")
    line.append(f"{status} ({confidence * 100:.1f}%)", style="dim")
    _console.print(line)


def validation_result(check_id: str, passed: bool, details: str) -> None:
    line = Text()
    if passed:
        line.append(f"  ✓ {check_id}", style="green")
    else:
        line.append(f"  ✗ {check_id}", style="bold red")
    if details:
        line.append(f"  {details}", style="dim")
    _console.print(line)


def escalation(question: str, suggestions) -> None:
    header = Text()
    header.append("  [escalate] ", style="bold magenta")
    header.append(question, style="magenta")
    _console.print(header)
    for s in suggestions:
        _console.print(Text(f"    - {s}", style="magenta"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Model text --------------------------------------------------------------


def thinking(text: str) -> None:
    line = Text()
    line.append("  [thinking]", style="yellow")
    line.append(f" {text}", style="dim italic")
    _console.print(line)


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)
