"""
Job registry construction.

Builds the handler table once at process startup. Every handler is imported
and registered explicitly; there is no discovery.
"""

from fieldqueue.config.logging import get_logger
from fieldqueue.config.settings import Settings
from fieldqueue.v1.core.registries import JobRegistry
from fieldqueue.v1.infra.jobs.handlers import (
    CheckDriverExpirationsHandler,
    RunScheduledReportsHandler,
    SendInvoiceReminderHandler,
)

logger = get_logger(__name__)


def build_job_registry(settings: Settings) -> JobRegistry:
    """Create a registry populated with all job handlers."""

    logger.info("Registering job handlers")
    registry = JobRegistry()

    # Billing
    registry.register("sendInvoiceReminder", SendInvoiceReminderHandler(settings))

    # Fleet and reporting maintenance
    registry.register("checkDriverExpirations", CheckDriverExpirationsHandler(settings))
    registry.register("runScheduledReports", RunScheduledReportsHandler(settings))

    if settings.environment != "development":
        registry.freeze()

    logger.info("Job handlers registered", registered_handlers=registry.list())
    return registry
