"""
Memory Hub — Error Taxonomy

Each class maps to one handling policy:
    ValidationError         skip the record (or batch), log, continue
    NotFoundError           skip that record only
    TransientProviderError  bounded retry with backoff, then degrade
    ActionExecutionError    log, continue with the next trigger/task
    FatalStoreError         abort the batch, halt intake, surface to operator
"""


class MemoryHubError(Exception):
    """Base class for all Memory Hub errors."""


class ValidationError(MemoryHubError):
    """Malformed log file or record."""


class NotFoundError(MemoryHubError):
    """Referenced entity (usually a project) does not exist."""


class TransientProviderError(MemoryHubError):
    """Network/provider failure or timeout that is worth retrying."""


class ActionExecutionError(MemoryHubError):
    """A trigger/schedule action ran and reported failure."""


class FatalStoreError(MemoryHubError):
    """The event store is unreachable or corrupt."""


class ConfigurationError(MemoryHubError):
    """A provider or action is missing something it needs to run."""
