"""Deterministic classification of worker exit signals."""

from __future__ import annotations

import json
import re

from orchard.orchestrator.models import WorkerOutcome, WorkerStatus

COMPLETION_SENTINEL = "ITHAVEBEENDONE"
BLOCKED_DIRECTIVE = "STATUS: BLOCKED"
DIAGNOSTIC_TAIL_LINES = 5

_BLOCKED_LINE = re.compile(r"STATUS: BLOCKED\s*(?P<reason>[^\r\n]+)?")
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_JSON_LINE = re.compile(r"^\s*(\{.*\})\s*$", re.MULTILINE)


def classify_worker_outcome(
    *,
    stdout: str,
    stderr: str,
    exit_code: int | None,
    record_text: str = "",
) -> WorkerOutcome:
    """Classify a finished worker from its output and its issue record.

    The completion sentinel wins over a blocked directive, and both win over
    the exit code. Exit code zero without a sentinel is an unconfirmed
    completion; anything else is a failure carrying a short diagnostic.
    """

    sources = (stdout, stderr, record_text)

    if any(COMPLETION_SENTINEL in source for source in sources):
        return WorkerOutcome(
            status=WorkerStatus.COMPLETED,
            message="Worker completed successfully. Ready for review.",
            confirmed=True,
            matched_rule="sentinel",
        )

    for source in sources:
        match = _BLOCKED_LINE.search(source)
        if match is not None:
            reason = (match.group("reason") or "").strip() or "unknown reason"
            return WorkerOutcome(
                status=WorkerStatus.BLOCKED,
                message=f"Worker is blocked: {reason}",
                matched_rule="blocked_directive",
            )

    if exit_code == 0:
        return WorkerOutcome(
            status=WorkerStatus.COMPLETED,
            message="Worker exited successfully but did not write the completion marker.",
            confirmed=False,
            matched_rule="exit_zero",
        )

    return WorkerOutcome(
        status=WorkerStatus.FAILED,
        message=_failure_message(exit_code=exit_code, stdout=stdout, stderr=stderr),
        matched_rule="exit_nonzero",
    )


def last_lines(text: str, count: int) -> list[str]:
    """Return the last `count` non-empty lines of `text`."""

    if count <= 0:
        return []
    return [line for line in text.splitlines() if line.strip()][-count:]


def _failure_message(*, exit_code: int | None, stdout: str, stderr: str) -> str:
    message = f"Worker failed (exit code {exit_code})."
    diagnostic = _json_diagnostic(stderr) or _json_diagnostic(stdout)
    if diagnostic:
        return f"{message}\nError: {diagnostic}"
    stderr_tail = last_lines(stderr, DIAGNOSTIC_TAIL_LINES)
    if stderr_tail:
        return f"{message}\nStderr: " + "\n".join(stderr_tail)
    stdout_tail = last_lines(stdout, DIAGNOSTIC_TAIL_LINES)
    if stdout_tail:
        return f"{message}\nOutput: " + "\n".join(stdout_tail)
    return message


def _json_diagnostic(text: str) -> str | None:
    """Pull an `error` or `message` field out of a JSON object in the output."""

    if not text.strip():
        return None
    candidates = [text]
    candidates.extend(match.group(1) for match in _FENCED_JSON.finditer(text))
    candidates.extend(reversed([match.group(1) for match in _JSON_LINE.finditer(text)]))
    for raw in candidates:
        payload = _try_load_dict(raw)
        if payload is None:
            continue
        diagnostic = _diagnostic_field(payload)
        if diagnostic:
            return diagnostic
    return None


def _diagnostic_field(payload: dict[str, object]) -> str | None:
    for key in ("error", "message"):
        value = payload.get(key)
        if isinstance(value, dict):
            nested = value.get("message")
            if isinstance(nested, str) and nested.strip():
                return nested.strip()
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _try_load_dict(raw: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed
