"""Registry of the nightly card-account jobs."""

from __future__ import annotations

from cardbatch_engine.steps.base import JobRegistry
from cardbatch_jobs.interest import interest_calculation_job
from cardbatch_jobs.listing import card_listing_job, customer_listing_job, xref_listing_job
from cardbatch_jobs.master_load import master_load_job
from cardbatch_jobs.posting import daily_posting_job
from cardbatch_jobs.report import transaction_report_job
from cardbatch_jobs.statement import statement_generation_job


def default_job_registry() -> JobRegistry:
    """A fresh registry holding every built-in job definition."""
    registry = JobRegistry()
    for build in (
        master_load_job,
        daily_posting_job,
        interest_calculation_job,
        transaction_report_job,
        statement_generation_job,
        card_listing_job,
        xref_listing_job,
        customer_listing_job,
    ):
        registry.register(build())
    return registry
