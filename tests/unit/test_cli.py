import asyncio
import json

import pytest
from typer.testing import CliRunner

import jpel.persistence as persistence
from jpel.cli import app
from jpel.persistence import InMemoryProcessDefinitionRepository, InMemoryProcessInstanceRepository

runner = CliRunner()

DOCUMENT = {
    "id": "greeting",
    "name": "Greeting",
    "start": "a:main",
    "activities": {
        "main": {"type": "sequence", "activities": ["a:ask", "a:greet"]},
        "ask": {
            "type": "human",
            "prompt": "Who is there?",
            "inputs": [{"name": "name", "type": "text", "required": True}],
        },
        "greet": {"type": "compute", "code": ["v:greeting = 'Hello ' + a:ask.v:name"]},
    },
}


@pytest.fixture(autouse=True)
def repositories(tmp_path, monkeypatch):
    monkeypatch.setenv("JPEL_CONFIG", str(tmp_path / "absent.yaml"))
    repos = (InMemoryProcessDefinitionRepository(), InMemoryProcessInstanceRepository())
    monkeypatch.setattr(persistence, "_repositories", repos)
    return repos


@pytest.fixture
def definition_file(tmp_path):
    path = tmp_path / "greeting.json"
    path.write_text(json.dumps(DOCUMENT))
    return path


def test_process_validate(definition_file, tmp_path):
    result = runner.invoke(app, ["process", "validate", str(definition_file)])
    assert result.exit_code == 0, result.output
    assert "Definition is valid" in result.output

    broken = tmp_path / "broken.yaml"
    broken.write_text("id: x\nname: X\nstart: a:nowhere\nactivities: {}\n")
    result = runner.invoke(app, ["process", "validate", str(broken)])
    assert result.exit_code == 1
    assert "Start activity reference 'a:nowhere'" in result.output


def test_process_load_list_and_show(definition_file):
    result = runner.invoke(app, ["process", "load", str(definition_file)])
    assert result.exit_code == 0, result.output
    assert "Loaded process greeting (3 activities)" in result.output

    result = runner.invoke(app, ["process", "list"])
    assert "greeting\tGreeting" in result.output

    result = runner.invoke(app, ["process", "show", "greeting"])
    assert "- ask: human" in result.output

    result = runner.invoke(app, ["process", "show", "missing"])
    assert result.exit_code == 1
    assert "Process not found" in result.output


def test_instance_lifecycle(definition_file, repositories):
    runner.invoke(app, ["process", "load", str(definition_file)])

    result = runner.invoke(app, ["instance", "create", "greeting"])
    assert result.exit_code == 0, result.output
    assert "Task ask: Who is there?" in result.output

    _, instances = repositories
    instance_id = asyncio.run(instances.find_all())[0].instance_id

    result = runner.invoke(app, ["instance", "task", instance_id])
    assert "name* (text)" in result.output

    result = runner.invoke(app, ["instance", "submit", instance_id, "ask", "--data", "{}"])
    assert result.exit_code == 1
    assert "name is required" in result.output

    result = runner.invoke(app, ["instance", "submit", instance_id, "ask", "--data", '{"name": "Ada"}'])
    assert result.exit_code == 0, result.output
    assert f"Instance {instance_id}: completed" in result.output

    result = runner.invoke(app, ["instance", "show", instance_id])
    assert "- greet: completed" in result.output

    result = runner.invoke(app, ["instance", "list", "--status", "completed"])
    assert instance_id in result.output


def test_instance_errors():
    result = runner.invoke(app, ["instance", "show", "nope"])
    assert result.exit_code == 1
    assert "Process instance 'nope' not found" in result.output

    result = runner.invoke(app, ["instance", "submit", "nope", "ask", "--data", "not json"])
    assert result.exit_code == 1
    assert "Invalid JSON data" in result.output


def test_run_prompts_for_each_task(definition_file):
    result = runner.invoke(app, ["run", str(definition_file)], input="\nAda\n")

    assert result.exit_code == 0, result.output
    assert "Who is there?" in result.output
    assert "name is required" in result.output
    assert "completed" in result.output


def test_missing_file():
    result = runner.invoke(app, ["run", "does-not-exist.yaml"])
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_json_envelopes(definition_file):
    runner.invoke(app, ["process", "load", str(definition_file)])

    result = runner.invoke(app, ["--json", "instance", "create", "greeting"])
    assert result.exit_code == 0, result.output
    envelope = json.loads(result.output)
    assert envelope["success"] is True
    assert envelope["data"]["status"] == "running"
    assert envelope["data"]["humanTask"]["activityId"] == "ask"
    assert "timestamp" in envelope

    result = runner.invoke(app, ["--json", "instance", "show", "nope"])
    assert result.exit_code == 1
    envelope = json.loads(result.output)
    assert envelope["success"] is False
    assert envelope["error"] == "Process instance 'nope' not found"


def test_malformed_files_are_reported(tmp_path):
    broken_json = tmp_path / "broken.json"
    broken_json.write_text('{"id": "x",')
    result = runner.invoke(app, ["process", "validate", str(broken_json)])
    assert result.exit_code == 1
    assert f"Could not parse {broken_json}" in result.output

    broken_yaml = tmp_path / "broken.yaml"
    broken_yaml.write_text("id: [unclosed\nname: X\n")
    result = runner.invoke(app, ["run", str(broken_yaml)])
    assert result.exit_code == 1
    assert f"Could not parse {broken_yaml}" in result.output
