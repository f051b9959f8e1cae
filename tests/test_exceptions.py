"""
Test the custom assert functions and the exception hierarchy
"""

# Third Party
import pytest

# Local
from cdplane import exceptions


@pytest.mark.parametrize(
    ["assert_fn", "exception_type"],
    [
        (exceptions.assert_config, exceptions.ConfigError),
        (exceptions.assert_cluster, exceptions.ClusterError),
        (exceptions.assert_read, exceptions.ReadError),
        (exceptions.assert_valid, exceptions.ValidationError),
    ],
)
def test_assert_functions(assert_fn, exception_type):
    """Make sure each assert passes silently and raises the right exception
    when it fails
    """
    assert_fn(True)
    exception_msg = "error mesage"
    with pytest.raises(exception_type, match=exception_msg):
        assert_fn(False, exception_msg)


def test_fatal_errors():
    """Make sure config and validation errors are fatal"""
    for exception_type in [exceptions.ConfigError, exceptions.ValidationError]:
        err = exception_type("boom")
        assert isinstance(err, exceptions.CdplaneFatalError)
        assert err.is_fatal_error


def test_expected_errors():
    """Make sure cluster errors are expected, non-fatal errors"""
    for exception_type in [
        exceptions.ClusterError,
        exceptions.ReadError,
        exceptions.WriteError,
        exceptions.WriteConflictError,
        exceptions.PartialCascadeFailure,
    ]:
        err = exception_type("boom")
        assert isinstance(err, exceptions.CdplaneExpectedError)
        assert isinstance(err, exceptions.CdplaneError)
        assert not err.is_fatal_error


def test_write_conflict_is_write_error():
    assert issubclass(exceptions.WriteConflictError, exceptions.WriteError)
    assert issubclass(exceptions.WriteError, exceptions.ClusterError)


def test_partial_cascade_failure_fields():
    """Make sure the failed step and the underlying errors are kept"""
    cause = exceptions.WriteError("nope")
    err = exceptions.PartialCascadeFailure("failed", step="release", errors=[cause])
    assert err.step == "release"
    assert err.errors == [cause]
    assert str(err) == "failed"
    assert exceptions.PartialCascadeFailure("failed").errors == []
