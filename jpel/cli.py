"""Command line interface for JPEL processes."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Dict, Optional, TypeVar

import typer
import yaml

from jpel.config import load_config
from jpel.engine import ProcessEngine
from jpel.errors import FieldValidationFailed, JpelError
from jpel.loader import read_document, validate
from jpel.models import ApiResponse, ExecutionResult, HumanTask, ProcessStatus

T = TypeVar("T")

app = typer.Typer(help="CLI for JPEL processes")

# Command groups
process_app = typer.Typer(help="Commands for managing process definitions")
instance_app = typer.Typer(help="Commands for managing process instances")

app.add_typer(process_app, name="process")
app.add_typer(instance_app, name="instance")

_options: Dict[str, Any] = {"json": False}


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Logging level (DEBUG, INFO, WARNING, ...); defaults to the config value"
    ),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON envelopes"),
) -> None:
    """JPEL CLI entry point."""
    level = log_level or load_config().log_level
    logging.basicConfig(level=level.upper(), format="%(levelname)s %(name)s: %(message)s")
    _options["json"] = json_output


def _run(awaitable: Awaitable[T]) -> T:
    try:
        return asyncio.run(awaitable)
    except JpelError as exc:
        if _options["json"]:
            typer.echo(ApiResponse.fail(str(exc)).model_dump_json(by_alias=True))
        else:
            typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _emit_json(data: Any) -> None:
    typer.echo(ApiResponse.ok(data).model_dump_json(by_alias=True))


def _read(path: Path) -> Dict[str, Any]:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return read_document(path)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        typer.secho(f"Could not parse {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except JpelError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_result(result: ExecutionResult) -> None:
    if _options["json"]:
        _emit_json(result.model_dump(mode="json", by_alias=True))
        return
    typer.echo(f"Instance {result.instance_id}: {result.status.value}")
    if result.current_activity:
        typer.echo(f"Current activity: {result.current_activity}")
    if result.message:
        typer.echo(result.message)
    if result.human_task:
        _echo_task(result.human_task)


def _echo_task(task: HumanTask) -> None:
    typer.echo(f"Task {task.activity_id}: {task.prompt or task.name}")
    for field in task.fields:
        marker = "*" if field.required else ""
        default = f" [{field.default_value}]" if field.default_value is not None else ""
        typer.echo(f"  - {field.name}{marker} ({field.type.value}){default}")
    for upload in task.file_uploads:
        allowed = ", ".join(upload.allowed_types) or "any type"
        typer.echo(f"  - upload {upload.name} ({allowed})")
    for attachment in task.attachments:
        typer.echo(f"  - attachment {attachment.name}: {attachment.url}")


# ----------------------------------------------------------------------
# Process definitions


@process_app.command("validate")
def process_validate(path: Path) -> None:
    """
    Check a definition file without loading it.

    Prints every structural error and warning. Exits with code 1 when the
    definition is invalid.

    Example:
        jpel process validate ./guides/employee_onboarding.yaml
    """
    report = validate(_read(path))
    for warning in report.warnings:
        typer.secho(f"warning: {warning}", fg=typer.colors.YELLOW)
    if not report.valid:
        for error in report.errors:
            typer.secho(f"error: {error}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo("Definition is valid")


@process_app.command("load")
def process_load(path: Path) -> None:
    """Load a definition file into the configured repository."""
    document = _read(path)
    definition = _run(ProcessEngine().load_process(document))
    typer.echo(f"Loaded process {definition.id} ({len(definition.activities)} activities)")


@process_app.command("list")
def process_list() -> None:
    """List loaded process definitions."""
    summaries = _run(ProcessEngine().get_processes())
    if not summaries:
        typer.echo("No processes found")
        return
    for summary in summaries:
        typer.echo(f"{summary.id}\t{summary.name}\t{summary.version or '-'}")


@process_app.command("show")
def process_show(process_id: str) -> None:
    """Show the activities of one definition."""
    definition = _run(ProcessEngine().get_process(process_id))
    if definition is None:
        typer.echo("Process not found")
        raise typer.Exit(code=1)
    typer.echo(f"Process {definition.id}: {definition.name}")
    if definition.description:
        typer.echo(definition.description)
    typer.echo(f"Start: {definition.start}")
    for activity_id, activity in definition.activities.items():
        typer.echo(f"- {activity_id}: {activity.type}")


# ----------------------------------------------------------------------
# Process instances


@instance_app.command("create")
def instance_create(process_id: str, title: Optional[str] = None) -> None:
    """Start a new instance of a loaded process."""
    _echo_result(_run(ProcessEngine().create_instance(process_id, title=title)))


@instance_app.command("list")
def instance_list(
    process_id: Optional[str] = typer.Option(None, "--process", help="Filter by process id"),
    status: Optional[ProcessStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List instances with their status and current activity."""
    summaries = _run(ProcessEngine().list_instances(process_id=process_id, status=status))
    if not summaries:
        typer.echo("No instances found")
        return
    for summary in summaries:
        typer.echo(
            f"{summary.instance_id}\t{summary.process_id}\t{summary.status.value}"
            f"\t{summary.current_activity or '-'}"
        )


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show one instance with the state of each activity.

    Example:
        jpel instance show 3f2c...
        # Output: Instance 3f2c...: running
        #         - collect_name: completed
        #         - review: running
    """
    instance = _run(ProcessEngine().get_instance(instance_id))
    if _options["json"]:
        _emit_json(instance.model_dump(mode="json", by_alias=True))
        return
    typer.echo(f"Instance {instance.instance_id}: {instance.status.value}")
    typer.echo(f"Process: {instance.process_id}")
    if instance.current_activity:
        typer.echo(f"Current activity: {instance.current_activity}")
    if instance.aggregate_pass_fail:
        typer.echo(f"Aggregate: {instance.aggregate_pass_fail.value}")
    for activity_id, activity in instance.activities.items():
        line = f"- {activity_id}: {activity.status.value}"
        if activity.pass_fail:
            line += f" ({activity.pass_fail.value})"
        if activity.error:
            line += f" error: {activity.error}"
        typer.echo(line)


@instance_app.command("task")
def instance_task(instance_id: str) -> None:
    """Show the human task an instance is waiting on."""
    task = _run(ProcessEngine().get_current_task(instance_id))
    if task is None:
        typer.echo("No task waiting")
        return
    _echo_task(task)


@instance_app.command("submit")
def instance_submit(
    instance_id: str,
    activity_id: str,
    data: str = typer.Option("{}", help="JSON object with the field values"),
) -> None:
    """Submit values for a waiting human task."""
    try:
        values = json.loads(data)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid JSON data: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_result(_run(ProcessEngine().submit_human_task(instance_id, activity_id, values)))


@instance_app.command("rerun")
def instance_rerun(instance_id: str) -> None:
    """Run an instance again from the start, keeping entered values."""
    _echo_result(_run(ProcessEngine().rerun(instance_id)))


@instance_app.command("resume")
def instance_resume(instance_id: str) -> None:
    """Continue an instance from its first unfinished activity."""
    _echo_result(_run(ProcessEngine().resume(instance_id)))


@instance_app.command("next")
def instance_next(instance_id: str) -> None:
    """Show the next pending activity without changing the instance."""
    _echo_result(_run(ProcessEngine().navigate_to_next_pending(instance_id)))


@instance_app.command("cancel")
def instance_cancel(instance_id: str) -> None:
    """Cancel a running instance."""
    _echo_result(_run(ProcessEngine().cancel(instance_id)))


# ----------------------------------------------------------------------
# Interactive run


def _prompt_task(task: HumanTask, errors: Dict[str, list]) -> Dict[str, Any]:
    typer.echo(task.prompt or task.name or task.activity_id)
    values: Dict[str, Any] = {}
    for field in task.fields:
        for message in errors.get(field.name, []):
            typer.secho(f"  {message}", fg=typer.colors.RED)
        label = field.label or field.name
        if field.options:
            label += f" ({'/'.join(str(v) for v in field.option_values())})"
        default = field.default_value
        answer = typer.prompt(label, default="" if default is None else str(default), show_default=default is not None)
        if answer != "":
            values[field.name] = answer
    return values


async def _run_interactively(engine: ProcessEngine, document: Dict[str, Any], title: Optional[str]) -> ExecutionResult:
    definition = await engine.load_process(document)
    result = await engine.create_instance(definition.id, title=title)
    errors: Dict[str, list] = {}
    while result.is_waiting:
        task = result.human_task
        values = _prompt_task(task, errors)
        try:
            result = await engine.submit_human_task(result.instance_id, task.activity_id, values)
        except FieldValidationFailed as exc:
            if set(exc.errors) - {field.name for field in task.fields}:
                raise
            errors = exc.errors
            continue
        errors = {}
    return result


@app.command("run")
def run(path: Path, title: Optional[str] = None) -> None:
    """
    Load a definition and run it interactively.

    Every human task is prompted for on the terminal until the instance
    completes, fails or is terminated.

    Example:
        jpel run ./guides/employee_onboarding.yaml
    """
    document = _read(path)
    result = _run(_run_interactively(ProcessEngine(), document, title))
    _echo_result(result)
    if result.status != ProcessStatus.COMPLETED:
        raise typer.Exit(code=1)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
