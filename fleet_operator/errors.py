class FleetError(Exception):
    """
    Base class for errors raised by the operator.
    """


class StoreError(FleetError):
    """
    Raised when an operation against the resource store fails.
    """
    def __init__(self, message, status_code = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(StoreError):
    """
    Raised when the requested resource does not exist.
    """
    def __init__(self, message, status_code = 404):
        super().__init__(message, status_code)


class ConflictError(StoreError):
    """
    Raised when a write is rejected because it was based on a stale version.
    """
    def __init__(self, message, status_code = 409):
        super().__init__(message, status_code)


class TransientStoreError(StoreError):
    """
    Raised when the resource store could not be reached or had a temporary failure.
    """


class ManifestError(FleetError):
    """
    Raised when a manifest or resource is malformed or missing a required field.
    """


class UnsupportedKindError(FleetError):
    """
    Raised when there is no applier registered for the kind of a manifest.
    """
    def __init__(self, api_version, kind):
        super().__init__(f"unhandled type {kind} ({api_version})")
        self.api_version = api_version
        self.kind = kind


class AggregateError(FleetError):
    """
    Raised to report several independent failures at once.

    Each failure is a tuple of (identifier, error), where the identifier names
    the item that failed. The message has one line per failure.
    """
    def __init__(self, failures):
        self.failures = list(failures)
        #: The errors for the failed items, in order
        self.errors = [error for _, error in self.failures]
        super().__init__(
            "\n".join(f"{identifier}: {error}" for identifier, error in self.failures)
        )

    @classmethod
    def from_failures(cls, failures):
        """
        Returns an aggregate for the given failures, or None if no error is set.
        """
        failures = [(identifier, error) for identifier, error in failures if error is not None]
        return cls(failures) if failures else None
