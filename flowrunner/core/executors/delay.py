"""Delay node: suspends the run for a duration, until an instant or a cron tick."""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from croniter import croniter

from ...models.core import NodeExecutionResult, NodeType, WaitKind, WaitState, WorkflowNode
from .base import ExecutorContext, NodeExecutor, is_present, is_template

MODES = ("duration", "until", "cron")


def parse_instant(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into a naive UTC datetime."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _as_seconds(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class DelayExecutor(NodeExecutor):
    """Computes when the run may continue. Never sleeps."""

    node_type = NodeType.DELAY

    def _validate_data(self, node: WorkflowNode) -> List[str]:
        data = node.data
        modes = [mode for mode in MODES if is_present(data.get(mode))]
        if not modes:
            return ["Delay duration must be at least 1 second"]
        if len(modes) > 1:
            return [f"Delay accepts only one of duration, until or cron (got {', '.join(modes)})"]

        mode = modes[0]
        value = data[mode]
        if is_template(value):
            return []
        if mode == "duration":
            seconds = _as_seconds(value)
            if seconds is None or seconds < 1:
                return ["Delay duration must be at least 1 second"]
        elif mode == "until":
            if parse_instant(value) is None:
                return [f"Delay until must be an ISO-8601 timestamp: {value}"]
        elif not croniter.is_valid(str(value)):
            return [f"Invalid cron expression: {value}"]
        return []

    def resume_time(self, node: WorkflowNode, now: datetime) -> datetime:
        data = node.data
        if is_present(data.get("duration")):
            return now + timedelta(seconds=_as_seconds(data["duration"]))
        if is_present(data.get("until")):
            return parse_instant(data["until"])
        return croniter(str(data["cron"]), now).get_next(datetime)

    def _run(self, node: WorkflowNode, context: ExecutorContext) -> Any:
        resume_at = self.resume_time(node, context.now)
        delay_ms = max(0, int((resume_at - context.now).total_seconds() * 1000))
        output = {
            mode: node.data[mode] for mode in MODES if is_present(node.data.get(mode))
        }
        output.update({
            "resumeAt": resume_at.isoformat(),
            "delayMs": delay_ms,
            "executedAt": context.now.isoformat(),
        })

        if context.dry_run:
            return {**output, "simulated": True}
        if delay_ms == 0:
            return {**output, "resumedAt": context.now.isoformat()}

        return NodeExecutionResult(
            success=True,
            suspended=True,
            output=output,
            wait=WaitState(
                kind=WaitKind.DELAY,
                node_id=node.id,
                node_execution_id=context.node_execution_id,
                resume_at=resume_at,
                details={"output": output},
            ),
        )

    def is_retryable(self, node: WorkflowNode) -> bool:
        return True
