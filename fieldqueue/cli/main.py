"""FieldQueue CLI - Main Entry Point"""

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel

from fieldqueue.config.settings import DeliveryMode, settings
from fieldqueue.infra.database import Database
from fieldqueue.v1.infra.jobs.executor import start_executor

from . import __version__
from .commands import jobs
from .utils.formatting import print_info, print_success, print_warning

console = Console()

# Create main Typer app
app = typer.Typer(
    name="fieldqueue",
    help="FieldQueue - background job queue and executor",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")


@app.command()
def worker():
    """🏃 Run the job executor poll loop"""
    if settings.job_delivery_mode == DeliveryMode.PUSH:
        print_warning(
            "Push delivery mode: jobs arrive via /v1/jobs/dispatch, no polling"
        )
        return

    print_info(
        f"Starting executor ({settings.job_delivery_mode.value} delivery, "
        f"poll every {settings.job_poll_interval_ms}ms)"
    )
    start_executor(settings)


@app.command("init-db")
def init_db():
    """🗄️ Create the job queue and run-log tables"""

    async def create():
        database = Database(settings)
        try:
            await database.create_all()
        finally:
            await database.close()

    asyncio.run(create())
    print_success("Job tables created")


@app.command()
def version():
    """📎 Show version information"""
    console.print(
        Panel(
            f"[bold cyan]FieldQueue[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Delivery mode: [yellow]{settings.job_delivery_mode.value}[/yellow]\n"
            f"• Environment: [blue]{settings.environment}[/blue]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
