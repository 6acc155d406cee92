import pytest

from jpel.config import JpelConfig
from jpel.engine import ProcessEngine
from jpel.persistence import (
    InMemoryProcessDefinitionRepository,
    InMemoryProcessInstanceRepository,
)


def compute(*lines):
    return {"type": "compute", "code": list(lines)}


def human(*inputs, prompt=None):
    activity = {"type": "human", "inputs": list(inputs)}
    if prompt:
        activity["prompt"] = prompt
    return activity


def sequence(*refs):
    return {"type": "sequence", "activities": [f"a:{ref}" for ref in refs]}


def process(activities, start="main", **extra):
    document = {"id": "test-process", "name": "Test process", "start": f"a:{start}"}
    document.update(extra)
    document["activities"] = activities
    return document


@pytest.fixture
def engine():
    return ProcessEngine(
        definitions=InMemoryProcessDefinitionRepository(),
        instances=InMemoryProcessInstanceRepository(),
        config=JpelConfig(environment={"API_BASE": "https://api.example.com"}),
    )
