"""prqa — automated quality assurance for pull requests."""

__version__ = "0.4.0"
