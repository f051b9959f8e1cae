"""
This module implements custom exceptions
"""

# Standard
from typing import List, Optional

## Base Error ##################################################################


class CdplaneError(Exception):
    """Base class for all cdplane exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not this error should fail the whole
        reconciliation pass
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class CdplaneFatalError(CdplaneError):
    """A CdplaneFatalError is one that indicates an unexpected, and likely
    unrecoverable, failure during a reconciliation. The instance phase is set to
    Failed.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ConfigError(CdplaneFatalError):
    """Exception caused by invalid library configuration"""


class ValidationError(CdplaneFatalError):
    """Exception caused by a malformed instance spec or label selector"""


## Expected Errors #############################################################


class CdplaneExpectedError(CdplaneError):
    """A CdplaneExpectedError is one that indicates an expected failure
    condition that should cause the current operation to terminate, but is
    expected to resolve in a subsequent reconciliation.
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class ClusterError(CdplaneExpectedError):
    """Exception caused when a cluster operation fails in an unexpected way"""


class ReadError(ClusterError):
    """A read against the object store failed for a reason other than the
    object not existing
    """


class WriteError(ClusterError):
    """A create, update or delete against the object store failed"""


class WriteConflictError(WriteError):
    """A write was rejected because the object changed since it was read"""


class PartialCascadeFailure(CdplaneExpectedError):
    """A step of the deletion cascade failed. The finalizer is retained and the
    cascade is re-run on the next reconciliation.
    """

    def __init__(
        self,
        message: str = "",
        step: Optional[str] = None,
        errors: Optional[List[Exception]] = None,
    ):
        self.step = step
        self.errors = errors or []
        super().__init__(message)


## Assertions ##################################################################


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when a library configuration value is required to hold.
    """
    if not condition:
        raise ConfigError(message)


def assert_cluster(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ClusterError. This should
    be used when an operation in the cluster (such as fetching an existing
    secret) is required to succeed.
    """
    if not condition:
        raise ClusterError(message)


def assert_read(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ReadError. This should be
    used directly after a read from the object store.
    """
    if not condition:
        raise ReadError(message)


def assert_valid(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ValidationError. This should
    be used when parsing the content of an instance spec.
    """
    if not condition:
        raise ValidationError(message)
