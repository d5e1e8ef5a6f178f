"""Read container stdout/stderr pipes line by line and hand each line to a log destination."""

__version__ = "0.1.0"