"""Example driving the onboarding process programmatically."""

import asyncio
from pathlib import Path

from jpel import ProcessEngine
from jpel.loader import read_document


async def main():
    engine = ProcessEngine()
    document = read_document(Path(__file__).with_name("employee_onboarding.yaml"))
    definition = await engine.load_process(document)

    result = await engine.create_instance(definition.id, title="Onboard Ada")
    print(result.message)

    # First human task: the new hire's details
    result = await engine.submit_human_task(
        result.instance_id,
        result.current_activity,
        {"full_name": "Ada Lovelace", "email": "ada@acme.com", "role": "engineer"},
    )
    print(result.message)

    result = await engine.submit_human_task(
        result.instance_id, result.current_activity, {"start_date": "2025-03-01"}
    )
    instance = await engine.get_instance(result.instance_id)
    print(instance.status.value, instance.variables["summary"], instance.aggregate_pass_fail)


if __name__ == "__main__":
    asyncio.run(main())
