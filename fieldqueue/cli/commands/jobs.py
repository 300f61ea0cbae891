"""Job Commands - enqueue and inspect background jobs"""

import asyncio
import json

import typer
from rich.console import Console

from fieldqueue.config.settings import settings
from fieldqueue.v1.core.exceptions import InvalidJobPayloadError
from fieldqueue.v1.infra.jobs.runtime import JobRuntime, build_runtime
from fieldqueue.v1.infra.jobs.schemas import JobPayload

from ..utils.formatting import (
    create_result_table,
    create_stats_table,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Background job management")


def _run(coro_factory):
    """Build a runtime, run one coroutine against it, then close it."""

    async def runner():
        runtime = build_runtime(settings)
        try:
            return await coro_factory(runtime)
        finally:
            await runtime.close()

    return asyncio.run(runner())


@app.command("enqueue")
def enqueue(
    job_type: str = typer.Argument(..., help="Job type (e.g. 'sendInvoiceReminder')"),
    org_id: str = typer.Option(..., "--org", "-o", help="Organization id"),
    data: str = typer.Option("{}", "--data", "-d", help="Job data as a JSON object"),
):
    """📥 Enqueue a background job"""
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON for --data: {e}")
        raise typer.Exit(1) from None

    if not isinstance(parsed, dict):
        print_error("--data must be a JSON object")
        raise typer.Exit(1)

    payload = JobPayload(org_id=org_id, type=job_type, data=parsed)

    async def do_enqueue(runtime: JobRuntime):
        return await runtime.queue.enqueue(payload)

    try:
        row_id = _run(do_enqueue)
    except InvalidJobPayloadError as e:
        print_error(e.message)
        raise typer.Exit(1) from None

    if row_id is None:
        print_success(f"Dispatched '{job_type}' to the push dispatcher")
    else:
        print_success(f"Enqueued '{job_type}' as row {row_id}")


@app.command("process-next")
def process_next():
    """⚙️ Claim and process a single job"""

    async def do_process(runtime: JobRuntime):
        return await runtime.executor.process_next_job()

    result = _run(do_process)
    if result is None:
        print_info("No jobs available")
        return

    console.print(create_result_table(result.model_dump(mode="json")))


@app.command("stats")
def stats():
    """📊 Show queue depth and registered handlers"""

    async def do_stats(runtime: JobRuntime):
        return await runtime.queue.queue_depth(), runtime.registry.list()

    depth, handlers = _run(do_stats)
    console.print(create_stats_table(depth, handlers))
