"""
Nightly card-account jobs built on cardbatch_engine.

    master_load            load account/card/xref/customer/disclosure/balance files
    daily_posting          validate and post the daily transaction file
    interest_calculation   monthly interest per category balance
    transaction_report     transaction detail report with totals
    statement_generation   one printed statement per active account
    card_listing, xref_listing, customer_listing
                           master file listings

Importing ``cardbatch_jobs.orm`` registers the domain tables on the shared
declarative Base, so ``create_tables()`` creates them with the engine's
metadata tables.
"""

from cardbatch_jobs import orm  # noqa: F401
from cardbatch_jobs.registry import default_job_registry

__all__ = ["default_job_registry"]
