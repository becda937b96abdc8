"""
vSentry Automation - Integration Test Configuration

Fixtures that wire a complete in-process execution engine. HTTP, SMTP and
the firewall are replaced with in-memory stand-ins.
"""

from unittest.mock import MagicMock

import pytest

from src.shared.automation import (
    DryRunFirewall,
    ExecutionEngine,
    ExpressionEvaluator,
    InMemoryExecutionStore,
    InMemoryIncidentProvider,
    InMemoryPlaybookStore,
    TriggerResolver,
    build_executors,
)


@pytest.fixture
def firewall():
    return DryRunFirewall()


@pytest.fixture
def smtp_server():
    """SMTP connection stand-in that accepts every recipient"""
    server = MagicMock()
    server.send_message.return_value = {}
    return server


@pytest.fixture
def playbook_store():
    return InMemoryPlaybookStore()


@pytest.fixture
def execution_store():
    return InMemoryExecutionStore()


@pytest.fixture
def incident_provider(sample_incident):
    return InMemoryIncidentProvider({sample_incident['id']: sample_incident})


@pytest.fixture
def executors(http_session, firewall, smtp_server):
    return build_executors(
        ExpressionEvaluator(),
        firewall=firewall,
        session=http_session,
        smtp_factory=MagicMock(return_value=smtp_server),
    )


@pytest.fixture
def engine(playbook_store, execution_store, executors, incident_provider):
    """Execution engine over in-memory stores"""
    engine = ExecutionEngine(
        playbook_store=playbook_store,
        execution_store=execution_store,
        executors=executors,
        trigger_resolver=TriggerResolver(incident_provider),
    )
    yield engine
    engine.shutdown(wait=True)
