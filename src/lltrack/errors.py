"""Exception types raised by the tracking engine."""


class TrackingError(Exception):
    """Base class for all tracking engine errors."""


class MalformedSampleError(TrackingError, ValueError):
    """Sample carries wrong-shaped, non-finite or out-of-range values.

    Raised by the sample constructors. The ingestion callbacks catch it and
    drop the sample, so it never reaches the filter state.
    """


class ConfigurationError(TrackingError, ValueError):
    """Invalid configuration value or unreadable configuration file."""
