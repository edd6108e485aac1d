"""Fleet Command API: queue, run and audit shell commands on remote servers."""

__version__ = "0.3.0"
