"""Unit tests for playbook stores."""

import pytest

from src.shared.automation.exceptions import (
    PlaybookNotFoundError,
    ValidationError,
    ValidationErrorKind,
)
from src.shared.automation.playbook import Playbook, TriggerType
from src.shared.automation.playbook_store import (
    DynamoDBPlaybookStore,
    FilePlaybookStore,
    InMemoryPlaybookStore,
    get_playbook_store,
)


@pytest.fixture(params=["memory", "file", "dynamodb"])
def store(request, tmp_path):
    """Run the shared contract against every backend."""
    if request.param == "memory":
        return InMemoryPlaybookStore()
    if request.param == "file":
        return FilePlaybookStore(base_path=str(tmp_path / "playbooks"))
    table = request.getfixturevalue("playbooks_table")
    return DynamoDBPlaybookStore(table_name=table.name, region="us-east-1")


@pytest.fixture
def playbook(sample_playbook_definition):
    return Playbook(
        name="Brute force response",
        definition=sample_playbook_definition,
        is_active=True,
        trigger_type=TriggerType.INCIDENT_CREATED,
        rule_ids=[7],
    )


class TestPlaybookStoreContract:
    """Behavior shared by every playbook store."""

    def test_save_and_get(self, store, playbook):
        store.save(playbook)

        loaded = store.get(playbook.id)

        assert loaded.name == "Brute force response"
        assert loaded.definition == playbook.definition
        assert loaded.rule_ids == ["7"]
        assert loaded.trigger_type == TriggerType.INCIDENT_CREATED

    def test_get_unknown(self, store):
        assert store.get("missing") is None

    def test_require_unknown(self, store):
        with pytest.raises(PlaybookNotFoundError):
            store.require("missing")

    def test_save_overwrites(self, store, playbook):
        store.save(playbook)
        playbook.name = "Renamed"

        store.save(playbook)

        assert store.get(playbook.id).name == "Renamed"
        assert len(store.list()) == 1

    def test_active_playbook_is_validated(self, store, playbook):
        playbook.definition.nodes = [n for n in playbook.definition.nodes if n.id != "trigger"]
        playbook.definition.edges = [e for e in playbook.definition.edges if e.source != "trigger"]

        with pytest.raises(ValidationError) as exc_info:
            store.save(playbook)

        assert exc_info.value.kind == ValidationErrorKind.MISSING_TRIGGER
        assert store.get(playbook.id) is None

    def test_inactive_draft_may_be_incomplete(self, store):
        draft = Playbook(name="Draft", definition={"nodes": [], "edges": []})

        store.save(draft)

        assert store.get(draft.id).is_active is False

    def test_get_bound_to_rule(self, store, playbook):
        inactive = Playbook(
            name="Disabled",
            definition=playbook.definition,
            trigger_type=TriggerType.INCIDENT_CREATED,
            rule_ids=["7"],
        )
        manual = Playbook(
            name="Manual",
            definition=playbook.definition,
            is_active=True,
            rule_ids=["7"],
        )
        other_rule = Playbook(
            name="Other rule",
            definition=playbook.definition,
            is_active=True,
            trigger_type=TriggerType.INCIDENT_CREATED,
            rule_ids=["8"],
        )
        for p in (playbook, inactive, manual, other_rule):
            store.save(p)

        bound = store.get_bound_to_rule(7)

        assert [p.id for p in bound] == [playbook.id]

    def test_get_by_trigger(self, store, playbook):
        scheduled = Playbook(
            name="Nightly",
            definition=playbook.definition,
            is_active=True,
            trigger_type="schedule",
        )
        store.save(playbook)
        store.save(scheduled)

        assert [p.id for p in store.get_by_trigger(TriggerType.SCHEDULE)] == [scheduled.id]

    def test_delete(self, store, playbook):
        store.save(playbook)

        assert store.delete(playbook.id) is True
        assert store.delete(playbook.id) is False
        assert store.get(playbook.id) is None


class TestFilePlaybookStore:
    def test_writes_yaml_file(self, tmp_path, playbook):
        store = FilePlaybookStore(base_path=str(tmp_path))

        store.save(playbook)

        path = tmp_path / f"{playbook.id}.yml"
        assert path.exists()
        assert Playbook.from_yaml(path.read_text()).definition == playbook.definition

    def test_invalid_yaml_is_skipped(self, tmp_path, playbook):
        store = FilePlaybookStore(base_path=str(tmp_path))
        store.save(playbook)
        (tmp_path / "broken.yml").write_text("name: [unclosed")

        assert [p.id for p in store.list()] == [playbook.id]


class TestGetPlaybookStore:
    def test_default_is_memory(self, monkeypatch):
        monkeypatch.delenv("AUTOMATION_PLAYBOOK_STORE", raising=False)

        assert isinstance(get_playbook_store(), InMemoryPlaybookStore)

    def test_file_store(self, tmp_path):
        store = get_playbook_store("file", base_path=str(tmp_path))

        assert isinstance(store, FilePlaybookStore)

    def test_dynamodb_store(self):
        store = get_playbook_store("dynamodb", table_name="pb-table")

        assert isinstance(store, DynamoDBPlaybookStore)
        assert store.table_name == "pb-table"
