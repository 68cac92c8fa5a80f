"""
Exception hierarchy for genpool.

Configuration errors derive from ValueError so callers validating user input
can catch them generically; runtime failures derive from RuntimeError.
"""


class GenPoolError(Exception):
    """Base class for all genpool errors."""


class ConfigurationError(GenPoolError, ValueError):
    """A configuration literal or option value was rejected."""


class InvalidDeviceError(ConfigurationError):
    """Unknown device name or unusable device index."""


class InvalidComputeTypeError(ConfigurationError):
    """Unknown compute type literal."""


class InvalidBatchTypeError(ConfigurationError):
    """Unknown batch type literal."""


class InvalidOptionsError(ConfigurationError):
    """Generation options are inconsistent or out of range."""


class ModelLoadError(GenPoolError, RuntimeError):
    """The model could not be loaded onto one of the configured devices."""


class QueueFullError(GenPoolError, RuntimeError):
    """A batch was rejected because the pool queue is full."""


class PoolClosedError(GenPoolError, RuntimeError):
    """Work was submitted to a pool that has been closed."""


class ContextOwnershipError(GenPoolError, RuntimeError):
    """A callback context was used outside the call that owns it."""


class SequenceIndexError(GenPoolError, IndexError):
    """Index access outside a native sequence batch."""
