"""Collaborators the executors delegate side effects to.

``ActionCapabilityProvider`` performs the database, migration and HTTP
effects of action nodes. ``NotificationTransport`` delivers messages built
by notification nodes. Both are injected into the registry so tests and
deployments can swap them freely.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from ..models.core import ActionOperation, NotificationChannel
from .exceptions import CapabilityError, WorkflowEngineError
from .logging import get_logger

logger = get_logger(__name__)


class MigrationBackend(ABC):
    """Database connection and migration primitives owned by the host application."""

    @abstractmethod
    def discover(self, connection_id: str, team_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the pending migrations for a connection."""

    @abstractmethod
    def dry_run(self, connection_id: str, migrations: List[Any]) -> Dict[str, Any]:
        """Simulate applying ``migrations`` without committing them."""

    @abstractmethod
    def apply(self, connection_id: str, migrations: List[Any]) -> Dict[str, Any]:
        """Apply ``migrations``."""

    @abstractmethod
    def rollback(self, connection_id: str, migrations: List[Any]) -> Dict[str, Any]:
        """Revert ``migrations``."""

    @abstractmethod
    def apply_one(self, connection_id: str, migration_id: str) -> Dict[str, Any]:
        """Apply a single stored migration."""

    @abstractmethod
    def query(self, connection_id: str, query: str, parameters: Optional[List[Any]] = None) -> Dict[str, Any]:
        """Run a query and return its rows."""


class ActionCapabilityProvider(ABC):
    """Performs the underlying effect of an action node."""

    @abstractmethod
    def perform(self, operation: ActionOperation, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        """Perform ``operation`` with resolved ``params``.

        Raises:
            CapabilityError: If the effect could not be performed
        """

    def close(self) -> None:
        """Release held resources."""


class DefaultActionCapabilities(ActionCapabilityProvider):
    """HTTP calls through httpx, migration work through a ``MigrationBackend``."""

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        migration_backend: Optional[MigrationBackend] = None,
        timeout: float = 30.0,
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)
        self._backend = migration_backend
        self.timeout = timeout
        self._handlers: Dict[ActionOperation, Callable[[Dict[str, Any], Any], Dict[str, Any]]] = {
            ActionOperation.DISCOVER_MIGRATIONS: self._discover,
            ActionOperation.DRY_RUN: self._dry_run,
            ActionOperation.EXECUTE_MIGRATIONS: self._execute,
            ActionOperation.ROLLBACK: self._rollback,
            ActionOperation.DATABASE_MIGRATION: self._apply_one,
            ActionOperation.DATABASE_QUERY: self._query,
            ActionOperation.HTTP_REQUEST: self._http_request,
            ActionOperation.CUSTOM_API_CALL: self._http_request,
        }

    def perform(self, operation: ActionOperation, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        handler = self._handlers.get(operation)
        if handler is None:
            raise CapabilityError(
                f"Operation {operation.value} is not provided by this capability provider",
                operation=operation.value,
            )
        try:
            return handler(params, context)
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise CapabilityError(str(e), operation=operation.value)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _require_backend(self, operation: ActionOperation) -> MigrationBackend:
        if self._backend is None:
            raise CapabilityError(
                f"No migration backend configured for {operation.value}",
                operation=operation.value,
            )
        return self._backend

    def _discover(self, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        backend = self._require_backend(ActionOperation.DISCOVER_MIGRATIONS)
        team_id = getattr(context, "team_id", None)
        migrations = backend.discover(params["connectionId"], team_id)
        return {
            "connectionId": params["connectionId"],
            "migrations": migrations,
            "count": len(migrations),
        }

    def _dry_run(self, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        backend = self._require_backend(ActionOperation.DRY_RUN)
        result = backend.dry_run(params["connectionId"], params.get("migrations") or [])
        return {"connectionId": params["connectionId"], "dryRun": True, **result}

    def _execute(self, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        backend = self._require_backend(ActionOperation.EXECUTE_MIGRATIONS)
        result = backend.apply(params["connectionId"], params["migrations"])
        return {"connectionId": params["connectionId"], **result}

    def _rollback(self, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        backend = self._require_backend(ActionOperation.ROLLBACK)
        result = backend.rollback(params["connectionId"], params["migrations"])
        return {"connectionId": params["connectionId"], **result}

    def _apply_one(self, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        backend = self._require_backend(ActionOperation.DATABASE_MIGRATION)
        result = backend.apply_one(params["connectionId"], params["migrationId"])
        return {"connectionId": params["connectionId"], "migrationId": params["migrationId"], **result}

    def _query(self, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        backend = self._require_backend(ActionOperation.DATABASE_QUERY)
        return backend.query(params["connectionId"], params["query"], params.get("parameters"))

    def _http_request(self, params: Dict[str, Any], context: Any) -> Dict[str, Any]:
        method = str(params.get("method") or "GET").upper()
        url = params["url"]
        request_kwargs: Dict[str, Any] = {"headers": params.get("headers") or {}}

        body = params.get("body")
        if body is not None and method not in ("GET", "DELETE"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        try:
            response = self._client.request(
                method, url, timeout=params.get("timeout") or self.timeout, **request_kwargs
            )
        except httpx.HTTPError as e:
            raise CapabilityError(f"HTTP request to {url} failed: {e}", operation="http_request")

        if response.status_code >= 400:
            raise CapabilityError(
                f"HTTP {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                operation="http_request",
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "data": data,
        }


class NotificationMessage(BaseModel):
    """Message built by a notification node."""
    channel: NotificationChannel = Field(..., description="Channel family")
    recipients: List[str] = Field(default_factory=list, description="Addresses, channels or ids")
    subject: Optional[str] = Field(None, description="Subject line")
    body: str = Field("", description="Message text")
    url: Optional[str] = Field(None, description="Target URL for webhook-style channels")
    method: str = Field("POST", description="HTTP method for webhook delivery")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Structured payload")


class DeliveryReport(BaseModel):
    success: bool
    channel: NotificationChannel
    recipients: List[str] = Field(default_factory=list)
    status_code: Optional[int] = None
    error: Optional[str] = None
    delivered_at: datetime = Field(default_factory=datetime.utcnow)


class NotificationTransport(ABC):
    """Delivers a message or reports why it could not."""

    @abstractmethod
    def send(self, message: NotificationMessage) -> DeliveryReport:
        """Deliver ``message``."""

    def close(self) -> None:
        """Release held resources."""


class HttpNotificationTransport(NotificationTransport):
    """Posts chat and webhook messages with httpx.

    Email, PagerDuty and team channels go to senders registered by the host
    application. A channel without a sender reports a failed delivery.
    """

    def __init__(
        self,
        http_client: Optional[httpx.Client] = None,
        senders: Optional[Dict[NotificationChannel, Callable[[NotificationMessage], None]]] = None,
        slack_webhook_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout)
        self._senders = dict(senders or {})
        self.slack_webhook_url = slack_webhook_url

    def register_sender(self, channel: NotificationChannel, sender: Callable[[NotificationMessage], None]) -> None:
        self._senders[channel] = sender

    def send(self, message: NotificationMessage) -> DeliveryReport:
        if message.channel in (NotificationChannel.SLACK, NotificationChannel.WEBHOOK):
            return self._post(message)

        sender = self._senders.get(message.channel)
        if sender is None:
            return DeliveryReport(
                success=False,
                channel=message.channel,
                recipients=message.recipients,
                error=f"No transport configured for {message.channel.value} notifications",
            )
        try:
            sender(message)
        except Exception as e:
            logger.warning(f"{message.channel.value} delivery failed: {e}")
            return DeliveryReport(
                success=False, channel=message.channel, recipients=message.recipients, error=str(e)
            )
        return DeliveryReport(success=True, channel=message.channel, recipients=message.recipients)

    def _post(self, message: NotificationMessage) -> DeliveryReport:
        url = message.url
        if message.channel == NotificationChannel.SLACK:
            url = url or self.slack_webhook_url
        if not url:
            return DeliveryReport(
                success=False,
                channel=message.channel,
                recipients=message.recipients,
                error=f"No URL configured for {message.channel.value} notifications",
            )

        try:
            response = self._client.request(
                message.method.upper(), url, json=message.payload, headers=message.headers
            )
        except httpx.HTTPError as e:
            return DeliveryReport(
                success=False, channel=message.channel, recipients=message.recipients, error=str(e)
            )

        if response.status_code >= 400:
            return DeliveryReport(
                success=False,
                channel=message.channel,
                recipients=message.recipients,
                status_code=response.status_code,
                error=f"Webhook request failed: {response.status_code} {response.reason_phrase}",
            )
        return DeliveryReport(
            success=True,
            channel=message.channel,
            recipients=message.recipients,
            status_code=response.status_code,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
