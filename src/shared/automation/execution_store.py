"""Execution Store for playbook executions.

This module provides storage backends for execution records. The engine
creates one record per run and patches it as each node completes; pollers
read it until the status leaves ``running``. A record that reached a
terminal status is never modified again.
"""

import copy
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .exceptions import ExecutionNotFoundError, ExecutionStoreError
from .playbook import Execution, ExecutionErrorKind, ExecutionStatus, StepResult

logger = logging.getLogger(__name__)

PATCH_FIELDS = {"status", "end_time", "error", "error_kind", "logs"}


def _validate_patch(patch: Dict[str, Any]) -> None:
    unknown = set(patch) - PATCH_FIELDS
    if unknown:
        raise ExecutionStoreError(f"Unsupported execution fields in update: {sorted(unknown)}")


class ExecutionStore(ABC):
    """Abstract base class for execution storage backends.

    Implementations must allow concurrent writes to distinct records.
    """

    @abstractmethod
    def create(self, execution: Execution) -> str:
        """Persist a new execution record.

        Args:
            execution: Execution to save

        Returns:
            Execution ID
        """
        pass

    @abstractmethod
    def update(self, execution_id: str, patch: Dict[str, Any]) -> None:
        """Apply a partial update to a live execution.

        Args:
            execution_id: ID of execution to update
            patch: Any of ``status``, ``end_time``, ``error``, ``error_kind``
                and ``logs`` (a mapping of node ID to StepResult merged into
                the existing logs)

        Raises:
            ExecutionNotFoundError: If the execution does not exist
            ExecutionStoreError: If the record is already terminal or the
                write fails
        """
        pass

    @abstractmethod
    def get(self, execution_id: str) -> Optional[Execution]:
        """Get an execution by ID.

        Returns:
            Execution or None if not found
        """
        pass

    @abstractmethod
    def list_by_playbook(self, playbook_id: str, limit: int = 20) -> List[Execution]:
        """List executions of one playbook, newest first."""
        pass

    @abstractmethod
    def list_global(self, limit: int = 100) -> List[Execution]:
        """List executions across all playbooks, newest first."""
        pass

    def add_step_result(self, execution_id: str, node_id: str, result: StepResult) -> None:
        """Record the result of one node."""
        self.update(execution_id, {"logs": {node_id: result}})


class InMemoryExecutionStore(ExecutionStore):
    """In-memory execution store for testing and development."""

    def __init__(self):
        self._executions: Dict[str, Execution] = {}
        self._lock = threading.Lock()

    def create(self, execution: Execution) -> str:
        with self._lock:
            if execution.id in self._executions:
                raise ExecutionStoreError(f"Execution already exists: {execution.id}")
            self._executions[execution.id] = copy.deepcopy(execution)
        return execution.id

    def update(self, execution_id: str, patch: Dict[str, Any]) -> None:
        _validate_patch(patch)

        with self._lock:
            execution = self._executions.get(execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
            if execution.is_complete:
                raise ExecutionStoreError(
                    f"Execution {execution_id} is {execution.status.value} and can no longer change"
                )

            patch = copy.deepcopy(patch)
            if "logs" in patch:
                execution.logs.update(patch["logs"])
            if "status" in patch:
                execution.status = ExecutionStatus(patch["status"])
            if "end_time" in patch:
                execution.end_time = patch["end_time"]
            if "error" in patch:
                execution.error = patch["error"]
            if "error_kind" in patch:
                kind = patch["error_kind"]
                execution.error_kind = ExecutionErrorKind(kind) if kind is not None else None

    def get(self, execution_id: str) -> Optional[Execution]:
        with self._lock:
            execution = self._executions.get(execution_id)
            return copy.deepcopy(execution) if execution else None

    def list_by_playbook(self, playbook_id: str, limit: int = 20) -> List[Execution]:
        with self._lock:
            executions = [
                copy.deepcopy(e) for e in self._executions.values()
                if e.playbook_id == playbook_id
            ]
        executions.sort(key=lambda e: e.start_time, reverse=True)
        return executions[:limit]

    def list_global(self, limit: int = 100) -> List[Execution]:
        with self._lock:
            executions = [copy.deepcopy(e) for e in self._executions.values()]
        executions.sort(key=lambda e: e.start_time, reverse=True)
        return executions[:limit]


class DynamoDBExecutionStore(ExecutionStore):
    """DynamoDB-backed execution store for production use.

    Table layout: partition key ``pk`` (execution ID), sort key ``sk``
    (constant ``EXECUTION``), and a global secondary index
    ``gsi1-playbook-index`` on ``gsi1pk`` (playbook ID) / ``gsi1sk``
    (start time). Step results are kept as JSON strings in the ``logs`` map
    so arbitrary step output survives DynamoDB's number rules.
    """

    PLAYBOOK_INDEX = "gsi1-playbook-index"

    def __init__(
        self,
        table_name: str = "vsentry-playbook-executions",
        region: Optional[str] = None,
    ):
        """Initialize DynamoDB execution store.

        Args:
            table_name: DynamoDB table name
            region: AWS region (default: use environment)
        """
        self.table_name = table_name
        self.region = region
        self._table = None

    @property
    def table(self):
        """Lazy-load DynamoDB table resource."""
        if self._table is None:
            import boto3
            dynamodb = boto3.resource("dynamodb", region_name=self.region)
            self._table = dynamodb.Table(self.table_name)
        return self._table

    def _to_item(self, execution: Execution) -> Dict[str, Any]:
        return {
            "pk": execution.id,
            "sk": "EXECUTION",
            "gsi1pk": execution.playbook_id,
            "gsi1sk": execution.start_time.isoformat(),
            "id": execution.id,
            "playbook_id": execution.playbook_id,
            "status": execution.status.value,
            "trigger_type": execution.trigger_type.value,
            "trigger_context_id": execution.trigger_context_id,
            "start_time": execution.start_time.isoformat(),
            "end_time": execution.end_time.isoformat() if execution.end_time else None,
            "logs": {
                node_id: json.dumps(result.to_dict(), default=str)
                for node_id, result in execution.logs.items()
            },
            "error": execution.error,
            "error_kind": execution.error_kind.value if execution.error_kind else None,
        }

    def _from_item(self, item: Dict[str, Any]) -> Execution:
        data = {k: v for k, v in item.items() if k not in ("pk", "sk", "gsi1pk", "gsi1sk")}
        data["logs"] = {
            node_id: json.loads(raw) for node_id, raw in (item.get("logs") or {}).items()
        }
        return Execution.from_dict(data)

    def create(self, execution: Execution) -> str:
        from botocore.exceptions import ClientError

        try:
            self.table.put_item(
                Item=self._to_item(execution),
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            raise ExecutionStoreError(f"Error creating execution {execution.id}: {e}")

        logger.info(f"Saved execution: {execution.id}")
        return execution.id

    def update(self, execution_id: str, patch: Dict[str, Any]) -> None:
        from botocore.exceptions import ClientError

        _validate_patch(patch)

        assignments = []
        names = {"#status": "status"}
        values: Dict[str, Any] = {
            ":success": ExecutionStatus.SUCCESS.value,
            ":failed": ExecutionStatus.FAILED.value,
        }

        for i, (node_id, result) in enumerate((patch.get("logs") or {}).items()):
            names[f"#n{i}"] = node_id
            values[f":r{i}"] = json.dumps(result.to_dict(), default=str)
            assignments.append(f"logs.#n{i} = :r{i}")

        if "status" in patch:
            values[":status"] = ExecutionStatus(patch["status"]).value
            assignments.append("#status = :status")
        if "end_time" in patch:
            end_time = patch["end_time"]
            values[":end_time"] = end_time.isoformat() if isinstance(end_time, datetime) else end_time
            assignments.append("end_time = :end_time")
        if "error" in patch:
            names["#error"] = "error"
            values[":error"] = patch["error"]
            assignments.append("#error = :error")
        if "error_kind" in patch:
            kind = patch["error_kind"]
            values[":error_kind"] = ExecutionErrorKind(kind).value if kind is not None else None
            assignments.append("error_kind = :error_kind")

        if not assignments:
            return

        try:
            self.table.update_item(
                Key={"pk": execution_id, "sk": "EXECUTION"},
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression="attribute_exists(pk) AND #status <> :success AND #status <> :failed",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                if self.get(execution_id) is None:
                    raise ExecutionNotFoundError(f"Execution not found: {execution_id}")
                raise ExecutionStoreError(
                    f"Execution {execution_id} is terminal and can no longer change"
                )
            raise ExecutionStoreError(f"Error updating execution {execution_id}: {e}")

    def get(self, execution_id: str) -> Optional[Execution]:
        from botocore.exceptions import ClientError

        try:
            response = self.table.get_item(Key={"pk": execution_id, "sk": "EXECUTION"})
        except ClientError as e:
            raise ExecutionStoreError(f"Error getting execution {execution_id}: {e}")

        item = response.get("Item")
        return self._from_item(item) if item else None

    def list_by_playbook(self, playbook_id: str, limit: int = 20) -> List[Execution]:
        from botocore.exceptions import ClientError

        try:
            response = self.table.query(
                IndexName=self.PLAYBOOK_INDEX,
                KeyConditionExpression="gsi1pk = :pk",
                ExpressionAttributeValues={":pk": playbook_id},
                ScanIndexForward=False,
                Limit=limit,
            )
        except ClientError as e:
            raise ExecutionStoreError(f"Error listing executions for {playbook_id}: {e}")

        return [self._from_item(item) for item in response.get("Items", [])]

    def list_global(self, limit: int = 100) -> List[Execution]:
        from botocore.exceptions import ClientError

        items: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {}
        try:
            while True:
                response = self.table.scan(**kwargs)
                items.extend(response.get("Items", []))
                if "LastEvaluatedKey" not in response:
                    break
                kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        except ClientError as e:
            raise ExecutionStoreError(f"Error listing executions: {e}")

        items.sort(key=lambda item: item.get("start_time", ""), reverse=True)
        return [self._from_item(item) for item in items[:limit]]


def get_execution_store(store_type: Optional[str] = None, **kwargs) -> ExecutionStore:
    """Factory function to get an execution store instance.

    Args:
        store_type: Type of store ("memory" or "dynamodb")
        **kwargs: Store-specific configuration

    Returns:
        ExecutionStore instance
    """
    if store_type is None:
        store_type = os.environ.get("AUTOMATION_EXECUTION_STORE", "memory")

    if store_type == "dynamodb":
        table_name = kwargs.get(
            "table_name",
            os.environ.get("EXECUTION_TABLE", "vsentry-playbook-executions"),
        )
        region = kwargs.get("region", os.environ.get("AWS_REGION"))
        return DynamoDBExecutionStore(table_name=table_name, region=region)
    return InMemoryExecutionStore()
