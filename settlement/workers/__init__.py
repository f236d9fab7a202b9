"""Background workers for scheduled settlement jobs."""
from .reconciliation_worker import start_reconciliation_worker
from .release_worker import ReleaseScheduler, start_release_worker

__all__ = ["ReleaseScheduler", "start_release_worker", "start_reconciliation_worker"]
