"""Unit tests for trigger resolution and dispatch."""

from unittest.mock import MagicMock

import pytest

from src.shared.automation.exceptions import TriggerResolutionError
from src.shared.automation.playbook import Playbook, TriggerType
from src.shared.automation.playbook_store import InMemoryPlaybookStore
from src.shared.automation.trigger import (
    DynamoDBIncidentProvider,
    InMemoryIncidentProvider,
    PlaybookDispatcher,
    TriggerPayload,
    TriggerResolver,
    get_incident_provider,
)


@pytest.fixture
def resolver(sample_incident):
    return TriggerResolver(InMemoryIncidentProvider({42: sample_incident}))


class TestTriggerResolver:
    """Tests for TriggerResolver.resolve."""

    def test_incident_id(self, resolver, sample_incident):
        resolved = resolver.resolve(TriggerType.INCIDENT_CREATED, TriggerPayload(incident_id="42"))

        assert resolved.context.incident == sample_incident
        assert resolved.context.env == {"incident": sample_incident}
        assert resolved.context.steps == {}
        assert resolved.trigger_context_id == "42"

    def test_unknown_incident(self, resolver):
        with pytest.raises(TriggerResolutionError, match="Incident not found"):
            resolver.resolve(TriggerType.INCIDENT_CREATED, TriggerPayload(incident_id="404"))

    def test_incident_id_without_provider(self):
        with pytest.raises(TriggerResolutionError):
            TriggerResolver().resolve(TriggerType.MANUAL, TriggerPayload(incident_id="42"))

    def test_mock_context_is_used_verbatim(self, resolver):
        mock = {"incident": {"id": 9, "severity": "low"}, "analyst": "bob"}

        resolved = resolver.resolve(TriggerType.MANUAL, TriggerPayload(mock_context=mock))

        assert resolved.context.env == mock
        assert resolved.context.incident == {"id": 9, "severity": "low"}
        assert resolved.trigger_context_id is None

    def test_mock_context_without_incident(self, resolver):
        resolved = resolver.resolve(TriggerType.MANUAL, TriggerPayload(mock_context={"x": 1}))

        assert resolved.context.incident == {}
        assert resolved.context.env == {"x": 1}

    def test_mock_context_must_be_object(self, resolver):
        with pytest.raises(TriggerResolutionError):
            resolver.resolve(TriggerType.MANUAL, TriggerPayload(mock_context=["a"]))

    def test_mock_incident_must_be_object(self, resolver):
        with pytest.raises(TriggerResolutionError):
            resolver.resolve(TriggerType.MANUAL, TriggerPayload(mock_context={"incident": "42"}))

    def test_both_supplied(self, resolver):
        payload = TriggerPayload(incident_id="42", mock_context={})

        with pytest.raises(TriggerResolutionError, match="Exactly one"):
            resolver.resolve(TriggerType.MANUAL, payload)

    def test_nothing_supplied_for_manual(self, resolver):
        with pytest.raises(TriggerResolutionError):
            resolver.resolve(TriggerType.MANUAL, None)

    def test_schedule_gets_empty_context(self, resolver):
        resolved = resolver.resolve(TriggerType.SCHEDULE, TriggerPayload())

        assert resolved.context.incident == {}
        assert resolved.context.env == {}

    def test_loaded_incident(self, resolver, sample_incident):
        resolved = resolver.resolve(TriggerType.INCIDENT_CREATED, TriggerPayload(incident=sample_incident))

        assert resolved.context.incident["rule_id"] == 7
        assert resolved.trigger_context_id == "42"


class TestTriggerPayload:
    def test_from_dict(self):
        payload = TriggerPayload.from_dict({"incident_id": 42, "playbook_id": "ignored"})

        assert payload.incident_id == "42"
        assert payload.mock_context is None

    def test_from_empty(self):
        assert TriggerPayload.from_dict(None) == TriggerPayload()

    def test_to_dict_omits_unset_fields(self):
        assert TriggerPayload(mock_context={}).to_dict() == {"mock_context": {}}


class TestIncidentProviders:
    """Tests for incident lookup backends."""

    def test_dynamodb_provider_loads_incident(self, incidents_table):
        provider = DynamoDBIncidentProvider(table_name=incidents_table.name, region="us-east-1")

        incident = provider.get_incident("42")

        assert incident["name"] == "Brute force login"
        assert incident["rule_id"] == 7
        assert isinstance(incident["rule_id"], int)
        assert incident["score"] == 7.5
        assert incident["alerts"] == [{"id": "a1", "count": 3}]

    def test_dynamodb_provider_unknown_incident(self, incidents_table):
        provider = DynamoDBIncidentProvider(table_name=incidents_table.name, region="us-east-1")

        assert provider.get_incident("404") is None

    def test_dynamodb_provider_missing_table(self, dynamodb_resource):
        provider = DynamoDBIncidentProvider(table_name="no-such-table", region="us-east-1")

        with pytest.raises(TriggerResolutionError, match="Failed to load incident"):
            provider.get_incident("42")

    def test_resolver_with_dynamodb_provider(self, incidents_table):
        resolver = TriggerResolver(
            DynamoDBIncidentProvider(table_name=incidents_table.name, region="us-east-1")
        )

        resolved = resolver.resolve(TriggerType.MANUAL, TriggerPayload(incident_id="42"))

        assert resolved.context.incident["source_ip"] == "10.0.0.5"
        assert resolved.trigger_context_id == "42"

    def test_factory_default_is_none(self, monkeypatch):
        monkeypatch.delenv("AUTOMATION_INCIDENT_PROVIDER", raising=False)

        assert get_incident_provider() is None

    def test_factory_dynamodb_from_environment(self, monkeypatch):
        monkeypatch.setenv("AUTOMATION_INCIDENT_PROVIDER", "dynamodb")
        monkeypatch.setenv("INCIDENT_TABLE", "prod-incidents")

        provider = get_incident_provider()

        assert isinstance(provider, DynamoDBIncidentProvider)
        assert provider.table_name == "prod-incidents"

    def test_factory_memory(self, sample_incident):
        provider = get_incident_provider("memory", incidents={42: sample_incident})

        assert provider.get_incident("42") == sample_incident


class TestPlaybookDispatcher:
    """Tests for PlaybookDispatcher with a stubbed engine."""

    @pytest.fixture
    def store(self, sample_playbook_definition):
        store = InMemoryPlaybookStore()
        store.save(Playbook(
            id="pb-bound",
            name="Bound",
            definition=sample_playbook_definition,
            is_active=True,
            trigger_type=TriggerType.INCIDENT_CREATED,
            rule_ids=["7"],
        ))
        store.save(Playbook(
            id="pb-nightly",
            name="Nightly",
            definition=sample_playbook_definition,
            is_active=True,
            trigger_type=TriggerType.SCHEDULE,
        ))
        store.save(Playbook(
            id="pb-disabled",
            name="Disabled",
            definition=sample_playbook_definition,
            trigger_type=TriggerType.INCIDENT_CREATED,
            rule_ids=["7"],
        ))
        return store

    @pytest.fixture
    def engine(self):
        engine = MagicMock()
        engine.start_execution.side_effect = lambda playbook_id, *args, **kwargs: f"exec-{playbook_id}"
        return engine

    def test_dispatch_incident(self, engine, store, sample_incident):
        dispatcher = PlaybookDispatcher(engine, store)

        execution_ids = dispatcher.dispatch_incident(sample_incident)

        assert execution_ids == ["exec-pb-bound"]
        engine.start_execution.assert_called_once_with(
            "pb-bound",
            TriggerPayload(incident=sample_incident),
            trigger_type=TriggerType.INCIDENT_CREATED,
        )

    def test_dispatch_incident_without_bound_playbooks(self, engine, store):
        dispatcher = PlaybookDispatcher(engine, store)

        assert dispatcher.dispatch_incident({"id": 1, "rule_id": 99}) == []
        engine.start_execution.assert_not_called()

    def test_dispatch_manual(self, engine, store):
        dispatcher = PlaybookDispatcher(engine, store)

        execution_id = dispatcher.dispatch_manual("pb-bound", {"incident": {"id": 1}})

        assert execution_id == "exec-pb-bound"
        engine.start_execution.assert_called_once_with(
            "pb-bound",
            TriggerPayload(mock_context={"incident": {"id": 1}}),
            trigger_type=TriggerType.MANUAL,
        )

    def test_dispatch_scheduled(self, engine, store):
        dispatcher = PlaybookDispatcher(engine, store)

        assert dispatcher.dispatch_scheduled() == ["exec-pb-nightly"]
