"""stackctl: declarative stack reconciler."""

__version__ = "0.1.0"
