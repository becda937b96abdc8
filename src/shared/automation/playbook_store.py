"""Playbook Storage Layer.

Storage backends for automation playbooks:
- InMemoryPlaybookStore: Process-local storage for tests and development
- FilePlaybookStore: Local filesystem storage with YAML files
- DynamoDBPlaybookStore: AWS DynamoDB storage

Saves are last-write-wins per playbook. An active playbook is validated
before it is written; inactive drafts may be saved incomplete.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import PlaybookNotFoundError
from .playbook import Playbook, TriggerType

logger = logging.getLogger(__name__)


def _matches(playbook: Playbook, filters: Dict[str, Any]) -> bool:
    if "is_active" in filters and playbook.is_active != filters["is_active"]:
        return False

    if "trigger_type" in filters:
        trigger_type = filters["trigger_type"]
        if isinstance(trigger_type, str):
            trigger_type = TriggerType(trigger_type)
        if playbook.trigger_type != trigger_type:
            return False

    if "rule_id" in filters and not playbook.is_bound_to(filters["rule_id"]):
        return False

    return True


class PlaybookStore(ABC):
    """Abstract base class for playbook storage."""

    @abstractmethod
    def get(self, playbook_id: str) -> Optional[Playbook]:
        """Get a playbook by ID.

        Args:
            playbook_id: Unique playbook identifier

        Returns:
            Playbook if found, None otherwise
        """
        pass

    @abstractmethod
    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Playbook]:
        """List playbooks with optional filtering.

        Args:
            filters: Optional filters:
                - is_active: bool
                - trigger_type: TriggerType or its string value
                - rule_id: Only playbooks bound to this detection rule

        Returns:
            List of matching playbooks
        """
        pass

    @abstractmethod
    def _write(self, playbook: Playbook) -> None:
        pass

    @abstractmethod
    def delete(self, playbook_id: str) -> bool:
        """Delete a playbook.

        Returns:
            True if deleted, False if not found
        """
        pass

    def save(self, playbook: Playbook) -> str:
        """Save a playbook.

        Args:
            playbook: Playbook to save

        Returns:
            Playbook ID

        Raises:
            ValidationError: If an active playbook has an invalid definition
        """
        if playbook.is_active:
            playbook.definition.validate()

        playbook.modified = datetime.now(timezone.utc)
        self._write(playbook)

        logger.info(f"Saved playbook {playbook.id} ({playbook.name})")
        return playbook.id

    def require(self, playbook_id: str) -> Playbook:
        """Get a playbook or raise ``PlaybookNotFoundError``."""
        playbook = self.get(playbook_id)
        if playbook is None:
            raise PlaybookNotFoundError(f"Playbook not found: {playbook_id}")
        return playbook

    def get_bound_to_rule(self, rule_id: Any) -> List[Playbook]:
        """Active incident-created playbooks bound to a detection rule."""
        return self.list({
            "is_active": True,
            "trigger_type": TriggerType.INCIDENT_CREATED,
            "rule_id": rule_id,
        })

    def get_by_trigger(self, trigger_type: TriggerType) -> List[Playbook]:
        """Get all active playbooks with a specific trigger type."""
        return self.list({"is_active": True, "trigger_type": trigger_type})


class InMemoryPlaybookStore(PlaybookStore):
    """In-memory playbook store for testing and development."""

    def __init__(self):
        self._playbooks: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, playbook_id: str) -> Optional[Playbook]:
        with self._lock:
            data = self._playbooks.get(playbook_id)
        return Playbook.from_dict(data) if data else None

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Playbook]:
        with self._lock:
            snapshot = list(self._playbooks.values())
        playbooks = [Playbook.from_dict(data) for data in snapshot]
        return [p for p in playbooks if _matches(p, filters or {})]

    def _write(self, playbook: Playbook) -> None:
        with self._lock:
            self._playbooks[playbook.id] = playbook.to_dict()

    def delete(self, playbook_id: str) -> bool:
        with self._lock:
            return self._playbooks.pop(playbook_id, None) is not None


class FilePlaybookStore(PlaybookStore):
    """File-based playbook storage using YAML files.

    Directory structure:
        {base_path}/
            {playbook_id}.yml
    """

    def __init__(self, base_path: str = "playbooks"):
        """Initialize file-based playbook store.

        Args:
            base_path: Base directory for playbook files
        """
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _get_playbook_path(self, playbook_id: str) -> Path:
        """Get path to playbook file."""
        return self.base_path / f"{playbook_id}.yml"

    def _load_playbook(self, file_path: Path) -> Optional[Playbook]:
        """Load a playbook from a YAML file.

        Args:
            file_path: Path to YAML file

        Returns:
            Playbook if valid, None if file not found or invalid
        """
        if not file_path.exists():
            return None

        try:
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"YAML parse error in {file_path}: {e}")
            return None

        if not data:
            return None

        return Playbook.from_dict(data)

    def get(self, playbook_id: str) -> Optional[Playbook]:
        return self._load_playbook(self._get_playbook_path(playbook_id))

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Playbook]:
        playbooks = []
        for yaml_file in sorted(self.base_path.glob("*.yml")):
            playbook = self._load_playbook(yaml_file)
            if playbook is not None and _matches(playbook, filters or {}):
                playbooks.append(playbook)
        return playbooks

    def _write(self, playbook: Playbook) -> None:
        file_path = self._get_playbook_path(playbook.id)
        tmp_path = file_path.with_suffix(".yml.tmp")
        with self._lock:
            with open(tmp_path, 'w') as f:
                f.write(playbook.to_yaml())
            os.replace(tmp_path, file_path)

    def delete(self, playbook_id: str) -> bool:
        file_path = self._get_playbook_path(playbook_id)
        if not file_path.exists():
            return False
        file_path.unlink()
        logger.info(f"Deleted playbook {playbook_id}")
        return True


class DynamoDBPlaybookStore(PlaybookStore):
    """DynamoDB-based playbook storage.

    Table: partition key ``pk`` (playbook ID). The graph definition is kept
    as a JSON string so editor data (positions, viewport) round-trips
    without DynamoDB number conversion.
    """

    def __init__(
        self,
        table_name: str = "vsentry-playbooks",
        region: Optional[str] = None,
    ):
        """Initialize DynamoDB playbook store.

        Args:
            table_name: Name of the playbooks table
            region: AWS region (uses default if not specified)
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

    def _playbook_to_item(self, playbook: Playbook) -> Dict[str, Any]:
        """Convert Playbook to DynamoDB item."""
        item = playbook.to_dict()
        item["pk"] = playbook.id
        item["definition"] = json.dumps(item["definition"])
        return item

    def _item_to_playbook(self, item: Dict[str, Any]) -> Playbook:
        """Convert DynamoDB item to Playbook."""
        data = dict(item)
        data.pop("pk", None)
        return Playbook.from_dict(data)

    def get(self, playbook_id: str) -> Optional[Playbook]:
        response = self.table.get_item(Key={"pk": playbook_id})
        item = response.get("Item")
        return self._item_to_playbook(item) if item else None

    def list(self, filters: Optional[Dict[str, Any]] = None) -> List[Playbook]:
        items: List[Dict[str, Any]] = []
        kwargs: Dict[str, Any] = {}
        while True:
            response = self.table.scan(**kwargs)
            items.extend(response.get("Items", []))
            if "LastEvaluatedKey" not in response:
                break
            kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        playbooks = [self._item_to_playbook(item) for item in items]
        return [p for p in playbooks if _matches(p, filters or {})]

    def _write(self, playbook: Playbook) -> None:
        self.table.put_item(Item=self._playbook_to_item(playbook))

    def delete(self, playbook_id: str) -> bool:
        response = self.table.delete_item(
            Key={"pk": playbook_id},
            ReturnValues="ALL_OLD",
        )
        return "Attributes" in response


def get_playbook_store(store_type: Optional[str] = None, **kwargs) -> PlaybookStore:
    """Factory function to get a playbook store instance.

    Args:
        store_type: Type of store ("memory", "file" or "dynamodb")
        **kwargs: Store-specific configuration

    Returns:
        PlaybookStore instance
    """
    if store_type is None:
        store_type = os.environ.get("AUTOMATION_PLAYBOOK_STORE", "memory")

    if store_type == "file":
        return FilePlaybookStore(
            base_path=kwargs.get("base_path", os.environ.get("AUTOMATION_PLAYBOOK_PATH", "playbooks"))
        )
    elif store_type == "dynamodb":
        return DynamoDBPlaybookStore(
            table_name=kwargs.get("table_name", os.environ.get("PLAYBOOK_TABLE", "vsentry-playbooks")),
            region=kwargs.get("region", os.environ.get("AWS_REGION")),
        )
    return InMemoryPlaybookStore()
