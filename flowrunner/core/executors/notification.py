"""Notification node: builds a message and hands it to the transport."""

from typing import Any, Dict, List

from ...models.core import NodeType, NotificationChannel, WorkflowNode
from ..capabilities import NotificationMessage, NotificationTransport
from ..exceptions import ExecutionError
from ..resolver import to_jsonable
from .base import ExecutorContext, NodeExecutor, as_list, is_present

DEFAULT_MESSAGE = "Workflow notification"


class NotificationExecutor(NodeExecutor):
    node_type = NodeType.NOTIFICATION

    def __init__(self, transport: NotificationTransport):
        self.transport = transport

    def _validate_data(self, node: WorkflowNode) -> List[str]:
        data = node.data
        provider = data.get("provider")
        if not is_present(provider):
            return ["Notification provider is required"]
        try:
            channel = NotificationChannel(provider)
        except ValueError:
            return [f"Unknown notification provider: {provider}"]

        errors = []
        if channel == NotificationChannel.EMAIL:
            if not is_present(data.get("recipients")) and not is_present(data.get("recipient")):
                errors.append("Email recipients are required")
            if not is_present(data.get("subject")):
                errors.append("Email subject is required")
        elif channel == NotificationChannel.SLACK:
            if not is_present(data.get("channel")):
                errors.append("Slack channel is required")
        elif channel == NotificationChannel.WEBHOOK:
            if not is_present(data.get("url")) and not is_present(data.get("webhook")):
                errors.append("Webhook URL is required")
        elif channel == NotificationChannel.PAGERDUTY:
            if not is_present(data.get("recipient")):
                errors.append("PagerDuty recipient is required")
        elif channel == NotificationChannel.TEAM:
            if not is_present(data.get("teamId")):
                errors.append("Team ID is required for team notifications")
        return errors

    def build_message(self, node: WorkflowNode, context: ExecutorContext) -> NotificationMessage:
        """Build the outbound message for a resolved notification node."""
        data = node.data
        channel = NotificationChannel(data["provider"])
        text = data.get("message") or data.get("template") or DEFAULT_MESSAGE

        if channel == NotificationChannel.EMAIL:
            recipients = as_list(data.get("recipients")) or as_list(data.get("recipient"))
        elif channel == NotificationChannel.SLACK:
            recipients = [data["channel"]]
        elif channel == NotificationChannel.TEAM:
            recipients = [data["teamId"]]
        else:
            recipients = as_list(data.get("recipient"))

        payload: Dict[str, Any]
        if channel == NotificationChannel.SLACK:
            payload = {
                "channel": data["channel"],
                "text": text,
                "attachments": [{
                    "color": "#36a64f",
                    "fields": [
                        {"title": "Workflow", "value": context.workflow_id, "short": True},
                        {"title": "Execution", "value": context.execution_id, "short": True},
                    ],
                }],
            }
        elif channel == NotificationChannel.WEBHOOK and isinstance(data.get("body"), dict):
            payload = data["body"]
        else:
            payload = {
                "workflowId": context.workflow_id,
                "executionId": context.execution_id,
                "message": text,
                "previousOutput": to_jsonable(context.previous_output),
                "timestamp": context.now.isoformat(),
            }

        return NotificationMessage(
            channel=channel,
            recipients=[str(recipient) for recipient in recipients],
            subject=data.get("subject"),
            body=str(text),
            url=data.get("url") or data.get("webhook"),
            method=str(data.get("method") or "POST"),
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            payload=payload,
        )

    def _run(self, node: WorkflowNode, context: ExecutorContext) -> Any:
        message = self.build_message(node, context)
        output = {
            "provider": message.channel.value,
            "recipients": message.recipients,
            "subject": message.subject,
            "message": message.body,
            "timestamp": context.now.isoformat(),
        }

        if context.dry_run:
            return {**output, "sent": False, "simulated": True, "payload": message.payload}

        report = self.transport.send(message)
        if not report.success:
            raise ExecutionError(
                report.error or f"{message.channel.value} delivery failed",
                node_id=node.id,
                operation=f"notify:{message.channel.value}",
            )
        return {**output, "sent": True, "statusCode": report.status_code,
                "deliveredAt": report.delivered_at.isoformat()}
