"""
Error taxonomy shared by every geodiv stage.
"""


class GeodivError(Exception):
    """Base class for all geodiv errors."""


class InsufficientDataError(GeodivError):
    """Too few samples for the requested neighbour count, fold count or training minimum."""


class DegenerateBlockError(GeodivError):
    """Spatial blocking cannot produce the requested fold count."""


class NonConvergenceError(GeodivError):
    """The aggregated validation metric never improved past the first round."""


class FeatureMismatchError(GeodivError):
    """Covariate schema differs between training and prediction inputs."""


class InvalidConfigurationError(GeodivError, ValueError):
    """Invalid k, alpha, thresholds or other configuration values."""


class InvalidSampleSetError(GeodivError, ValueError):
    """A SampleSet invariant (unique ids, complete values) was violated."""
