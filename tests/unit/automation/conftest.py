"""
Playbook automation - unit test fixtures.
"""

import pytest

from src.shared.automation.expressions import ExpressionEvaluator
from src.shared.automation.playbook import Context, StepResult


@pytest.fixture
def evaluator():
    """Fresh expression evaluator."""
    return ExpressionEvaluator()


@pytest.fixture
def ctx(sample_incident):
    """Context with an incident and one completed HTTP step."""
    return Context(
        incident=sample_incident,
        steps={
            "http1": StepResult.success(output={
                "status_code": 200,
                "headers": {"Content-Type": "application/json"},
                "body": {"reputation": "malicious", "score": 87},
            }),
        },
        env={"incident": sample_incident, "analyst": "alice"},
    )
