"""JSON report generation for reasoning runs."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the CLI or session wiring for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad value type, etc.)."""


class ContextOverflowError(AgentError):
    """Raised when the model call fails due to context window overflow."""


class ReportCollector:
    """Accumulates control-loop events during a run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.verdicts: dict[str, int] = {}
        self.compressions = 0
        self.tokens_saved = 0
        self.retries = 0
        self.validations_failed = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_iteration_seen = 0

    def _seen(self, iteration: int):
        if iteration > self.max_iteration_seen:
            self.max_iteration_seen = iteration

    def record_llm_call(
        self,
        iteration: int,
        duration: float,
        token_est: int,
        finish_reason: str | None,
        *,
        is_retry: bool = False,
        retry_reason: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        self._seen(iteration)
        event = {
            "iteration": iteration,
            "type": "llm_call",
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "finish_reason": finish_reason,
            "is_retry": is_retry,
        }
        if retry_reason is not None:
            event["retry_reason"] = retry_reason
        self.events.append(event)

    def record_quality(
        self, iteration: int, score: float, verdict: str, deficiencies
    ):
        self.verdicts[str(verdict)] = self.verdicts.get(str(verdict), 0) + 1
        self.events.append(
            {
                "iteration": iteration,
                "type": "quality",
                "score": round(score, 3),
                "verdict": str(verdict),
                "deficiencies": sorted(str(d) for d in deficiencies),
            }
        )

    def record_retry(
        self,
        iteration: int,
        tier: str,
        action: str,
        transform: str,
        reason: str | None = None,
    ):
        if action == "RETRY":
            self.retries += 1
        event = {
            "iteration": iteration,
            "type": "retry",
            "tier": str(tier),
            "action": str(action),
            "transform": str(transform),
        }
        if reason is not None:
            event["reason"] = str(reason)
        self.events.append(event)

    def record_tool_call(
        self,
        iteration: int,
        name: str,
        arguments: dict | None,
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
            "iteration": iteration,
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

    def record_compression(
        self,
        iteration: int,
        level: str,
        tokens_before: int,
        tokens_after: int,
        rules: list[str],
    ):
        self.compressions += 1
        self.tokens_saved += max(0, tokens_before - tokens_after)
        self.events.append(
            {
                "iteration": iteration,
                "type": "compression",
                "level": str(level),
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
                "rules": list(rules),
            }
        )

    def record_validation(
        self, iteration: int, check_id: str, passed: bool, details: str, duration: float
    ):
        if not passed:
            self.validations_failed += 1
        self.events.append(
            {
                "iteration": iteration,
                "type": "validation",
                "check": check_id,
                "passed": passed,
                "details": details,
                "duration_s": round(duration, 3),
            }
        )

    def record_termination(self, iteration: int, status: str, confidence: float):
        self.events.append(
            {
                "iteration": iteration,
                "type": "termination",
                "status": str(status),
                "confidence": round(confidence, 3),
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
        iterations: int,
        error_message: str | None = None,
        reason: str | None = None,
        confidence: float | None = None,
        escalation_question: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if reason is not None:
            result["reason"] = str(reason)
        if confidence is not None:
            result["confidence"] = round(confidence, 3)
        if escalation_question is not None:
            result["escalation_question"] = escalation_question
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
                "iterations": iterations,
                "llm_calls": self.llm_calls,
                "retries": self.retries,
                "verdicts": dict(self.verdicts),
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "compressions": self.compressions,
                "tokens_saved": self.tokens_saved,
                "validations_failed": self.validations_failed,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for a later ``write``."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
