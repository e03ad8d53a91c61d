"""explorAble: offline sync and location memories for the explorAble app."""

__version__ = "0.1.0"
