"""tasksync - keeps a local task tracker in step with external task sources."""

__version__ = "0.1.0"
