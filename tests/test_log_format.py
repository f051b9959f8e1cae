"""
Tests for the cdplane json log formatter
"""

# Standard
import json
import logging
import threading

# Local
from cdplane.log_format import (
    CdplaneJsonFormatter,
    current_reconciliation_id,
    reconcile_context,
)


def make_record(msg="hello"):
    return logging.LogRecord("TEST", logging.INFO, __file__, 1, msg, None, None)


def test_reconcile_context_fields():
    """Make sure records inside a reconcile context carry the instance and
    reconciliation id
    """
    formatter = CdplaneJsonFormatter()
    with reconcile_context("test/a", "ABC"):
        assert current_reconciliation_id() == "ABC"
        logged = json.loads(formatter.format(make_record()))
    assert logged["instance"] == "test/a"
    assert logged["reconciliationId"] == "ABC"
    assert logged["threadName"] == threading.current_thread().name
    assert current_reconciliation_id() is None


def test_no_context_fields():
    logged = json.loads(CdplaneJsonFormatter().format(make_record()))
    assert "instance" not in logged
    assert "reconciliationId" not in logged


def test_nested_contexts_restore():
    with reconcile_context("test/a", "A"):
        with reconcile_context("test/b", "B"):
            assert current_reconciliation_id() == "B"
        assert current_reconciliation_id() == "A"


def test_context_is_per_thread():
    seen = []

    def worker():
        seen.append(current_reconciliation_id())

    with reconcile_context("test/a", "A"):
        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()
    assert seen == [None]
