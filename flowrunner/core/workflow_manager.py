"""Workflow manager for definition handling, validation and publishing."""

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from ..models.core import DefinitionFormat, ValidationResult, WorkflowDefinition, WorkflowRecord
from .exceptions import CycleError, DefinitionError, NotFoundError, WorkflowStateError
from .logging import get_logger
from .parser import compute_execution_order, parse, to_document, validate

logger = get_logger(__name__)


class WorkflowManager:
    """Manages workflow definitions, their validation and publication."""

    def __init__(self, store, registry):
        """Initialize WorkflowManager.

        Args:
            store: ``ExecutionStore`` holding workflow records
            registry: ``ExecutorRegistry`` used for per-node validation
        """
        self.store = store
        self.registry = registry
        self._definition_cache: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._cache_lock = threading.Lock()

    def create_workflow(
        self,
        content: str,
        format: Union[DefinitionFormat, str] = DefinitionFormat.JSON,
        created_by: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> WorkflowRecord:
        """
        Parse, validate and store a new workflow definition.

        Args:
            content: Definition text
            format: ``json`` or ``yaml``
            created_by: Id of the creating actor
            team_id: Team that owns the workflow

        Returns:
            WorkflowRecord: The stored, unpublished workflow

        Raises:
            DefinitionError: If the definition cannot be parsed or has validation errors
        """
        definition_format = DefinitionFormat(format)
        definition = self._parse_valid(content, definition_format)
        logger.info(f"Creating new workflow: {definition.name}")

        record = WorkflowRecord(
            id=str(uuid.uuid4()),
            name=definition.name,
            description=definition.description,
            team_id=team_id,
            version=1,
            format=definition_format,
            content=content,
            definition=to_document(definition),
            is_published=False,
            created_by=created_by,
        )
        stored = self.store.create_workflow(record)
        self._cache(stored, definition)
        return stored

    def update_workflow(
        self,
        workflow_id: str,
        content: str,
        format: Optional[Union[DefinitionFormat, str]] = None,
    ) -> WorkflowRecord:
        """
        Replace the definition of an unpublished workflow.

        Raises:
            NotFoundError: If the workflow does not exist
            WorkflowStateError: If the workflow is already published
            DefinitionError: If the new definition is invalid
        """
        existing = self.get_workflow(workflow_id)
        if existing.is_published:
            raise WorkflowStateError(
                f"Workflow '{workflow_id}' is published and can no longer be modified",
                workflow_id=workflow_id,
            )

        definition_format = DefinitionFormat(format) if format else existing.format
        definition = self._parse_valid(content, definition_format)
        updated = self.store.update_workflow(workflow_id, {
            "name": definition.name,
            "description": definition.description,
            "format": definition_format,
            "content": content,
            "definition": to_document(definition),
            "version": existing.version + 1,
        })
        self._cache(updated, definition)
        logger.info(f"Updated workflow {workflow_id} to version {updated.version}")
        return updated

    def publish(self, workflow_id: str) -> WorkflowRecord:
        """
        Re-validate a workflow and make it runnable.

        Raises:
            NotFoundError: If the workflow does not exist
            CycleError: If the edges contain a cycle
            DefinitionError: If any other validation error is present
        """
        record = self.get_workflow(workflow_id)
        if record.is_published:
            return record

        self._raise_if_invalid(self.get_definition(record))

        published = self.store.update_workflow(workflow_id, {
            "is_published": True,
            "published_at": datetime.utcnow(),
        })
        logger.info(f"Published workflow '{published.name}' ({workflow_id}) at version {published.version}")
        return published

    def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        """
        Raises:
            NotFoundError: If the workflow does not exist
        """
        record = self.store.get_workflow(workflow_id)
        if record is None:
            raise NotFoundError(f"Workflow '{workflow_id}' not found", resource="workflow", resource_id=workflow_id)
        return record

    def list_workflows(self, team_id: Optional[str] = None) -> List[WorkflowRecord]:
        return self.store.list_workflows(team_id)

    def validate_content(self, content: str, format: Union[DefinitionFormat, str] = DefinitionFormat.JSON) -> ValidationResult:
        """Validate definition text without storing it. Never raises for bad input."""
        try:
            definition = parse(content, format)
        except DefinitionError as e:
            return ValidationResult(valid=False, errors=e.validation_errors or [e.message])
        return validate(definition, self.registry)

    def get_definition(self, record: WorkflowRecord) -> WorkflowDefinition:
        """Parsed definition for a stored workflow, cached by id and version."""
        key = (record.id, record.version)
        with self._cache_lock:
            cached = self._definition_cache.get(key)
        if cached is not None:
            return cached

        definition = parse(record.content, record.format)
        self._cache(record, definition)
        return definition

    def get_published_definition(self, workflow_id: str) -> Tuple[WorkflowRecord, WorkflowDefinition]:
        """
        Raises:
            NotFoundError: If the workflow does not exist
            WorkflowStateError: If the workflow has not been published
        """
        record = self.get_workflow(workflow_id)
        if not record.is_published:
            raise WorkflowStateError(f"Workflow '{workflow_id}' is not published", workflow_id=workflow_id)
        return record, self.get_definition(record)

    def _parse_valid(self, content: str, definition_format: DefinitionFormat) -> WorkflowDefinition:
        definition = parse(content, definition_format)
        self._raise_if_invalid(definition)
        return definition

    def _raise_if_invalid(self, definition: WorkflowDefinition):
        result = validate(definition, self.registry)
        if not result.valid:
            try:
                compute_execution_order(definition.nodes, definition.edges)
            except CycleError as cycle:
                cycle.validation_errors = result.errors
                cycle.add_details(validation_errors=result.errors)
                logger.error(f"Workflow validation failed: {cycle.message}")
                raise cycle
            error_msg = f"Workflow validation failed: {'; '.join(result.errors)}"
            logger.error(error_msg)
            raise DefinitionError(error_msg, validation_errors=result.errors, workflow_name=definition.name)
        if result.warnings:
            logger.warning(f"Workflow validation warnings: {'; '.join(result.warnings)}")

    def _cache(self, record: WorkflowRecord, definition: WorkflowDefinition):
        with self._cache_lock:
            self._definition_cache[(record.id, record.version)] = definition
