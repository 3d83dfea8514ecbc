"""Size and token estimation."""

from hypomnema.tokens.estimator import TokenEstimator

__all__ = ["TokenEstimator"]
