"""
Custom logging formats that contain more detailed cdplane logs
"""

# Standard
from contextlib import contextmanager
from typing import Optional
import threading

# First Party
from alog import AlogJsonFormatter

# Per-thread reconciliation context. Worker threads reconcile different
# instances concurrently so the context cannot live on the formatter.
_context = threading.local()


@contextmanager
def reconcile_context(instance_identity: str, reconciliation_id: str):
    """Attach an instance identity and reconciliation id to every log record
    emitted by the current thread inside the context
    """
    previous = (
        getattr(_context, "instance", None),
        getattr(_context, "reconciliation_id", None),
    )
    _context.instance = instance_identity
    _context.reconciliation_id = reconciliation_id
    try:
        yield
    finally:
        _context.instance, _context.reconciliation_id = previous


def current_reconciliation_id() -> Optional[str]:
    return getattr(_context, "reconciliation_id", None)


class CdplaneJsonFormatter(AlogJsonFormatter):
    """Custom Log Format that extends AlogJsonFormatter to add cdplane
    specific fields to the json: the identity of the instance being
    reconciled, the reconciliationId and thread information
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "process",
        "thread",
        "threadName",
        "instance",
        "reconciliationId",
    ]

    def format(self, record):
        instance = getattr(_context, "instance", None)
        if instance and not hasattr(record, "instance"):
            record.instance = instance
        reconciliation_id = getattr(_context, "reconciliation_id", None)
        if reconciliation_id:
            record.reconciliationId = reconciliation_id
        return super().format(record)
