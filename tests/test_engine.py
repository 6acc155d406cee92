import asyncio
import gc

import pytest

from conftest import compute, human, process, sequence
from jpel.errors import (
    ActivityNotWaiting,
    FieldValidationFailed,
    InstanceNotFound,
    ProcessNotFound,
)
from jpel.models import (
    ActivityStatus,
    AggregatePassFail,
    PassFail,
    ProcessStatus,
)


def assert_single_pointer(instance):
    running = instance.running_activities()
    assert running == [instance.current_activity]


@pytest.mark.asyncio
async def test_sequence_of_computes_completes_in_order(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("A", "B", "C"),
                "A": compute("v:trail = 'A'"),
                "B": compute("v:trail = v:trail + 'B'"),
                "C": compute("v:trail = v:trail + 'C'"),
            }
        )
    )

    result = await engine.create_instance("test-process")

    assert result.status == ProcessStatus.COMPLETED
    instance = await engine.get_instance(result.instance_id)
    assert instance.status == ProcessStatus.COMPLETED
    assert instance.variables["trail"] == "ABC"
    for activity_id in ("A", "B", "C", "main"):
        assert instance.activities[activity_id].status == ActivityStatus.COMPLETED
    finished = [instance.activities[a].completed_at for a in ("A", "B", "C")]
    assert finished == sorted(finished)
    assert instance.current_activity is None
    assert instance.execution.call_stack == []


@pytest.mark.asyncio
async def test_compute_values_are_stored_on_the_activity(engine):
    await engine.load_process(
        process({"calc": compute("this.total = 2 + 3", "this.label = 'sum ' + this.total")}, start="calc")
    )

    result = await engine.create_instance("test-process")

    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["calc"].variable_map() == {"total": 5, "label": "sum 5"}


@pytest.mark.asyncio
async def test_human_task_waits_and_resumes_on_submit(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("ask", "greet"),
                "ask": human({"name": "name", "type": "text", "required": True}, prompt="Who are you?"),
                "greet": compute("this.greeting = 'Hello ' + a:ask.v:name"),
            }
        )
    )

    result = await engine.create_instance("test-process")

    assert result.status == ProcessStatus.RUNNING
    assert result.current_activity == "ask"
    assert result.human_task.prompt == "Who are you?"
    assert [f.name for f in result.human_task.fields] == ["name"]
    instance = await engine.get_instance(result.instance_id)
    assert_single_pointer(instance)
    assert [frame.activity_id for frame in instance.execution.call_stack] == ["main"]

    result = await engine.submit_human_task(result.instance_id, "ask", {"name": "Bob"})

    assert result.status == ProcessStatus.COMPLETED
    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["greet"].variable_map()["greeting"] == "Hello Bob"


@pytest.mark.asyncio
async def test_switch_without_match_routes_to_default(engine):
    await engine.load_process(
        process(
            {
                "main": {
                    "type": "switch",
                    "expression": "'unknown'",
                    "cases": {"x": "a:X", "y": "a:Y"},
                    "default": "a:Z",
                },
                "X": compute("v:route = 'x'"),
                "Y": compute("v:route = 'y'"),
                "Z": compute("v:route = 'z'"),
            }
        )
    )

    result = await engine.create_instance("test-process")

    instance = await engine.get_instance(result.instance_id)
    switch = instance.activities["main"]
    assert switch.matched_case == "default"
    assert switch.expression_value == "unknown"
    assert switch.next_activity == "Z"
    assert instance.variables["route"] == "z"
    assert instance.activities["X"].status == ActivityStatus.PENDING


@pytest.mark.asyncio
async def test_switch_without_match_or_default_fails_the_process(engine):
    await engine.load_process(
        process(
            {
                "main": {"type": "switch", "expression": "v:kind", "cases": {"x": "a:X"}},
                "X": compute("v:route = 'x'"),
            },
            variables=[{"name": "kind", "defaultValue": "other"}],
        )
    )

    result = await engine.create_instance("test-process")

    assert result.status == ProcessStatus.FAILED
    assert result.message.startswith("Activity 'main' failed: No matching case for value 'other'")
    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["main"].status == ActivityStatus.FAILED


@pytest.mark.asyncio
async def test_nested_sequence_continues_in_outer_sequence(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("inner", "Z"),
                "inner": sequence("X", "Y"),
                "X": compute("v:trail = 'X'"),
                "Y": human({"name": "ok", "type": "boolean"}),
                "Z": compute("v:trail = v:trail + 'Z'"),
            }
        )
    )
    result = await engine.create_instance("test-process")
    assert result.current_activity == "Y"
    instance = await engine.get_instance(result.instance_id)
    assert [frame.activity_id for frame in instance.execution.call_stack] == ["main", "inner"]

    result = await engine.submit_human_task(result.instance_id, "Y", {"ok": "true"})

    assert result.status == ProcessStatus.COMPLETED
    instance = await engine.get_instance(result.instance_id)
    assert instance.variables["trail"] == "XZ"
    assert instance.activities["inner"].status == ActivityStatus.COMPLETED
    assert instance.activities["Y"].variable_map()["ok"] is True


@pytest.mark.asyncio
async def test_rerun_keeps_previous_answers_as_defaults(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("ask"),
                "ask": human({"name": "name", "type": "text", "defaultValue": "Guest"}),
            }
        )
    )
    result = await engine.create_instance("test-process")
    assert result.human_task.fields[0].default_value == "Guest"
    result = await engine.submit_human_task(result.instance_id, "ask", {"name": "Alice"})
    assert result.status == ProcessStatus.COMPLETED

    result = await engine.rerun(result.instance_id)

    assert result.status == ProcessStatus.RUNNING
    assert result.current_activity == "ask"
    field = result.human_task.fields[0]
    assert field.value == "Alice"
    assert field.default_value == "Alice"
    instance = await engine.get_instance(result.instance_id)
    assert instance.completed_at is None
    assert instance.activities["main"].status == ActivityStatus.PENDING
    assert_single_pointer(instance)


@pytest.mark.asyncio
async def test_aggregate_pass_fail_any_fail(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("first", "second"),
                "first": compute("this.passFail = 'pass'"),
                "second": compute("a:second.passFail = 'fail'"),
            }
        )
    )

    result = await engine.create_instance("test-process")

    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["first"].pass_fail == PassFail.PASS
    assert instance.activities["second"].pass_fail == PassFail.FAIL
    assert instance.aggregate_pass_fail == AggregatePassFail.ANY_FAIL


@pytest.mark.asyncio
async def test_aggregate_pass_fail_all_pass_and_unset(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("first", "second"),
                "first": compute("this.passFail = true"),
                "second": compute("v:done = true"),
            }
        )
    )
    result = await engine.create_instance("test-process")
    instance = await engine.get_instance(result.instance_id)
    assert instance.aggregate_pass_fail == AggregatePassFail.ALL_PASS

    await engine.load_process(
        process({"only": compute("v:done = true")}, start="only", id="silent")
    )
    result = await engine.create_instance("silent")
    instance = await engine.get_instance(result.instance_id)
    assert instance.aggregate_pass_fail is None


@pytest.mark.asyncio
async def test_submitting_empty_data_to_required_field_is_rejected(engine):
    await engine.load_process(
        process({"ask": human({"name": "name", "type": "text", "required": True})}, start="ask")
    )
    result = await engine.create_instance("test-process")

    with pytest.raises(FieldValidationFailed) as excinfo:
        await engine.submit_human_task(result.instance_id, "ask", {})

    assert excinfo.value.errors == {"name": ["name is required"]}
    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["ask"].status == ActivityStatus.RUNNING
    assert instance.current_activity == "ask"


@pytest.mark.asyncio
async def test_submit_to_activity_that_is_not_waiting(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("first", "second"),
                "first": human({"name": "a"}),
                "second": human({"name": "b"}),
            }
        )
    )
    result = await engine.create_instance("test-process")

    with pytest.raises(ActivityNotWaiting):
        await engine.submit_human_task(result.instance_id, "second", {"b": "x"})
    with pytest.raises(ActivityNotWaiting):
        await engine.submit_human_task(result.instance_id, "main", {})


@pytest.mark.asyncio
async def test_extra_submitted_keys_become_variables(engine):
    await engine.load_process(process({"ask": human({"name": "name"})}, start="ask"))
    result = await engine.create_instance("test-process")

    await engine.submit_human_task(result.instance_id, "a:ask", {"name": "Eve", "note": "hi"})

    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["ask"].variable_map() == {"name": "Eve", "note": "hi"}


@pytest.mark.asyncio
async def test_file_fields_must_reference_uploaded_files(engine):
    await engine.load_process(
        process({"upload": human({"name": "contract", "type": "file", "required": True})}, start="upload")
    )
    result = await engine.create_instance("test-process")

    with pytest.raises(FieldValidationFailed):
        await engine.submit_human_task(result.instance_id, "upload", {}, files={"contract": "missing"})

    record = await engine.files.upload(result.instance_id, "upload", "contract", "c.pdf", b"%PDF")
    result = await engine.submit_human_task(
        result.instance_id, "upload", {}, files={"contract": record.id}
    )
    assert result.status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_parallel_runs_children_one_after_another(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("both", "after"),
                "both": {"type": "parallel", "activities": ["a:left", "a:right"]},
                "left": human({"name": "l"}),
                "right": compute("v:right = true"),
                "after": compute("v:after = v:right"),
            }
        )
    )
    result = await engine.create_instance("test-process")
    assert result.current_activity == "left"
    instance = await engine.get_instance(result.instance_id)
    parallel = instance.activities["both"]
    assert parallel.parallel_state == "running"
    assert parallel.active_activities == ["left", "right"]

    result = await engine.submit_human_task(result.instance_id, "left", {"l": "done"})

    assert result.status == ProcessStatus.COMPLETED
    instance = await engine.get_instance(result.instance_id)
    parallel = instance.activities["both"]
    assert parallel.parallel_state == "completed"
    assert parallel.completed_activities == ["left", "right"]
    assert instance.variables["after"] is True


@pytest.mark.asyncio
async def test_branch_without_else_falls_through_to_next_sibling(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("check", "after"),
                "check": {"type": "branch", "condition": "v:amount > 100", "then": "a:approve"},
                "approve": compute("v:approved = true"),
                "after": compute("v:finished = true"),
            },
            variables=[{"name": "amount", "type": "number", "defaultValue": 5}],
        )
    )

    result = await engine.create_instance("test-process")

    assert result.status == ProcessStatus.COMPLETED
    instance = await engine.get_instance(result.instance_id)
    branch = instance.activities["check"]
    assert branch.condition_result is False
    assert branch.next_activity is None
    assert instance.activities["approve"].status == ActivityStatus.PENDING
    assert instance.variables["finished"] is True
    assert "approved" not in instance.variables


@pytest.mark.asyncio
async def test_branch_then_route(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("check", "after"),
                "check": {
                    "type": "branch",
                    "condition": "v:amount > 100",
                    "then": "a:approve",
                    "else": "a:reject",
                },
                "approve": compute("v:decision = 'approved'"),
                "reject": compute("v:decision = 'rejected'"),
                "after": compute("v:finished = true"),
            },
            variables=[{"name": "amount", "type": "number", "defaultValue": 500}],
        )
    )

    result = await engine.create_instance("test-process")

    instance = await engine.get_instance(result.instance_id)
    assert instance.variables["decision"] == "approved"
    assert instance.variables["finished"] is True
    assert instance.activities["check"].condition_result is True


@pytest.mark.asyncio
async def test_terminate_stops_the_process(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("stop", "never"),
                "stop": {"type": "terminate", "result": "failure", "reason": "Rejected by policy"},
                "never": compute("v:ran = true"),
            }
        )
    )

    result = await engine.create_instance("test-process")

    assert result.status == ProcessStatus.FAILED
    assert result.message == "Rejected by policy"
    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["stop"].status == ActivityStatus.COMPLETED
    assert instance.activities["never"].status == ActivityStatus.PENDING


@pytest.mark.asyncio
async def test_script_error_fails_activity_and_process(engine):
    await engine.load_process(
        process({"main": sequence("bad"), "bad": compute("this.x = 1 / 0")})
    )

    result = await engine.create_instance("test-process")

    assert result.status == ProcessStatus.FAILED
    assert result.message.startswith("Activity 'bad' failed: Code execution failed")
    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["bad"].status == ActivityStatus.FAILED
    assert "Division by zero" in instance.activities["bad"].error
    assert instance.running_activities() == []


@pytest.mark.asyncio
async def test_unknown_activity_type_fails_the_process(engine):
    await engine.load_process(
        process({"main": sequence("odd"), "odd": {"type": "robot", "arm": "left"}})
    )

    result = await engine.create_instance("test-process")

    assert result.status == ProcessStatus.FAILED
    assert "Unknown activity type 'robot'" in result.message
    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["odd"].status == ActivityStatus.FAILED


@pytest.mark.asyncio
async def test_missing_process_and_instance(engine):
    with pytest.raises(ProcessNotFound):
        await engine.create_instance("nope")
    with pytest.raises(InstanceNotFound):
        await engine.step("nope")


@pytest.mark.asyncio
async def test_cancel_marks_running_activity_cancelled(engine):
    await engine.load_process(process({"ask": human({"name": "x"})}, start="ask"))
    result = await engine.create_instance("test-process")

    result = await engine.cancel(result.instance_id)

    assert result.status == ProcessStatus.CANCELLED
    instance = await engine.get_instance(result.instance_id)
    assert instance.activities["ask"].status == ActivityStatus.CANCELLED
    with pytest.raises(ActivityNotWaiting):
        await engine.submit_human_task(result.instance_id, "ask", {"x": "1"})


@pytest.mark.asyncio
async def test_concurrent_submissions_are_serialized(engine):
    await engine.load_process(
        process(
            {
                "main": sequence("ask", "count"),
                "ask": human({"name": "n", "type": "number"}),
                "count": compute("v:total = a:ask.v:n * 2"),
            }
        )
    )
    result = await engine.create_instance("test-process")

    outcomes = await asyncio.gather(
        engine.submit_human_task(result.instance_id, "ask", {"n": 1}),
        engine.submit_human_task(result.instance_id, "ask", {"n": 2}),
        return_exceptions=True,
    )

    completed = [o for o in outcomes if not isinstance(o, Exception)]
    rejected = [o for o in outcomes if isinstance(o, ActivityNotWaiting)]
    assert len(completed) == 1 and len(rejected) == 1
    instance = await engine.get_instance(result.instance_id)
    assert instance.variables["total"] in (2, 4)


@pytest.mark.asyncio
async def test_env_values_are_available_to_scripts(engine):
    await engine.load_process(
        process({"calc": compute("v:url = env:API_BASE + '/users'")}, start="calc")
    )

    result = await engine.create_instance("test-process")

    instance = await engine.get_instance(result.instance_id)
    assert instance.variables["url"] == "https://api.example.com/users"


@pytest.mark.asyncio
async def test_statistics_and_listing(engine):
    await engine.load_process(process({"ask": human({"name": "x"})}, start="ask"))
    first = await engine.create_instance("test-process", title="First")
    await engine.create_instance("test-process")
    await engine.cancel(first.instance_id)

    stats = await engine.get_statistics()

    assert stats["processes"] == 1
    assert stats["instances"] == 2
    assert stats["byStatus"] == {"cancelled": 1, "running": 1}
    assert stats["waitingForHumanTask"] == 1
    running = await engine.list_instances(status=ProcessStatus.RUNNING)
    assert len(running) == 1 and running[0].current_activity == "ask"
    summaries = await engine.get_processes()
    assert summaries[0].activity_count == 1


@pytest.mark.asyncio
async def test_complete_process_ends_a_waiting_instance(engine):
    await engine.load_process(
        process({"main": sequence("ask", "after"), "ask": human({"name": "x"}), "after": compute("v:y = 1")})
    )
    result = await engine.create_instance("test-process")

    done = await engine.complete_process(result.instance_id, "Stopped by manager", success=False)

    assert done.status == ProcessStatus.FAILED
    assert done.message == "Stopped by manager"
    instance = await engine.get_instance(result.instance_id)
    assert instance.current_activity is None
    assert instance.activities["after"].status == ActivityStatus.PENDING


@pytest.mark.asyncio
async def test_restart_runs_a_finished_instance_again(engine):
    await engine.load_process(
        process(
            {"main": sequence("count"), "count": compute("v:runs = v:runs + 1")},
            variables=[{"name": "runs", "type": "number", "defaultValue": 0}],
        )
    )
    result = await engine.create_instance("test-process")
    assert (await engine.get_instance(result.instance_id)).variables["runs"] == 1

    again = await engine.restart(result.instance_id)

    assert again.status == ProcessStatus.COMPLETED
    assert (await engine.get_instance(result.instance_id)).variables["runs"] == 2

    unchanged = await engine.continue_execution(result.instance_id, "a:count")
    assert unchanged.message == "Process is completed"


@pytest.mark.asyncio
async def test_delete_process(engine):
    await engine.load_process(process({"only": compute("v:x = 1")}, start="only"))

    assert await engine.delete_process("test-process") is True
    assert await engine.get_process("test-process") is None
    assert await engine.delete_process("test-process") is False
    with pytest.raises(ProcessNotFound):
        await engine.create_instance("test-process")


@pytest.mark.asyncio
async def test_file_store_lists_and_deletes_per_instance(engine):
    first = await engine.files.upload("i-1", "upload", "contract", "a.pdf", b"a")
    await engine.files.upload("i-1", "upload", "scan", "b.png", b"bb")
    await engine.files.upload("i-2", "upload", "contract", "c.pdf", b"c")

    assert sorted(f.filename for f in await engine.files.list_for_instance("i-1")) == ["a.pdf", "b.png"]
    assert await engine.files.delete(first.id) is True
    assert await engine.files.exists(first.id) is False
    assert [f.filename for f in await engine.files.list_for_instance("i-1")] == ["b.png"]


def review_with_uploads():
    return process(
        {
            "review": {
                "type": "human",
                "prompt": "Upload the signed contract",
                "inputs": [{"name": "note"}],
                "fileUploads": [
                    {
                        "name": "contract",
                        "allowedTypes": ["application/pdf", ".docx"],
                        "maxBytes": 10,
                        "minCount": 1,
                        "maxCount": 2,
                    }
                ],
                "attachments": [
                    {"name": "Template", "url": "https://example.com/t.pdf", "mediaType": "application/pdf"}
                ],
            }
        },
        start="review",
    )


@pytest.mark.asyncio
async def test_human_task_exposes_uploads_and_attachments(engine):
    await engine.load_process(review_with_uploads())

    result = await engine.create_instance("test-process")

    task = result.human_task
    assert [upload.name for upload in task.file_uploads] == ["contract"]
    assert task.file_uploads[0].allowed_types == ["application/pdf", ".docx"]
    assert task.attachments[0].media_type == "application/pdf"
    assert task.model_dump(by_alias=True)["fileUploads"][0]["maxBytes"] == 10


@pytest.mark.asyncio
async def test_uploads_are_checked_against_their_slot(engine):
    await engine.load_process(review_with_uploads())
    result = await engine.create_instance("test-process")
    instance_id = result.instance_id

    with pytest.raises(FieldValidationFailed) as missing:
        await engine.submit_human_task(instance_id, "review", {})
    assert missing.value.errors["contract"] == ["contract needs at least 1 file(s)"]

    image = await engine.files.upload(instance_id, "review", "contract", "scan.png", b"png", "image/png")
    large = await engine.files.upload(instance_id, "review", "contract", "big.pdf", b"x" * 11, "application/pdf")
    with pytest.raises(FieldValidationFailed) as rejected:
        await engine.submit_human_task(
            instance_id, "review", {}, files={"contract": [image.id, large.id, "gone"]}
        )
    assert rejected.value.errors["contract"] == [
        "Unknown file id 'gone'",
        "scan.png is not an allowed type (application/pdf, .docx)",
        "big.pdf is larger than 10 bytes",
    ]
    instance = await engine.get_instance(instance_id)
    assert instance.activities["review"].status == ActivityStatus.RUNNING
    assert instance.activities["review"].files == {}

    pdf = await engine.files.upload(instance_id, "review", "contract", "c.pdf", b"%PDF", "application/pdf")
    docx = await engine.files.upload(instance_id, "review", "contract", "c.docx", b"doc")
    result = await engine.submit_human_task(instance_id, "review", {}, files={"contract": [pdf.id, docx.id]})

    assert result.status == ProcessStatus.COMPLETED
    instance = await engine.get_instance(instance_id)
    assert instance.activities["review"].files == {"contract": [pdf.id, docx.id]}


@pytest.mark.asyncio
async def test_uploads_are_kept_for_a_rerun(engine):
    await engine.load_process(review_with_uploads())
    result = await engine.create_instance("test-process")
    pdf = await engine.files.upload(result.instance_id, "review", "contract", "c.pdf", b"%PDF", "application/pdf")
    await engine.submit_human_task(result.instance_id, "review", {}, files={"contract": pdf.id})

    again = await engine.rerun(result.instance_id)
    assert again.human_task.files == {"contract": [pdf.id]}

    done = await engine.submit_human_task(result.instance_id, "review", {})
    assert done.status == ProcessStatus.COMPLETED


@pytest.mark.asyncio
async def test_instance_locks_are_released_after_use(engine):
    await engine.load_process(process({"main": sequence("ask"), "ask": human({"name": "n"})}))

    result = await engine.create_instance("test-process")
    await engine.submit_human_task(result.instance_id, "ask", {"n": "x"})
    gc.collect()

    assert result.instance_id not in engine._locks
    assert len(engine._locks) == 0
