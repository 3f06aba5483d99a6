"""Trace spans derived from execution logs, for log persistence."""

from __future__ import annotations

from typing import Any

from blockflow.core.context import ExecutionResult


def build_trace_spans(result: ExecutionResult) -> tuple[list[dict[str, Any]], float]:
    """
    One span per block log, in dispatch order.

    Returns (spans, total duration in ms). The total is the run's wall-clock
    duration when known, otherwise the sum of span durations.
    """
    spans = []
    for log in result.logs:
        span_id = log.iteration_key or log.block_id
        spans.append(
            {
                "id": span_id,
                "name": log.block_name or log.block_id,
                "type": log.block_kind,
                "duration": log.duration_ms,
                "startTime": log.started_at.isoformat(),
                "endTime": log.ended_at.isoformat(),
                "status": "success" if log.success else "error",
                "input": log.input,
                "output": log.output,
                "error": log.error,
            }
        )

    total = result.metadata.duration_ms or sum(span["duration"] for span in spans)
    return spans, total
