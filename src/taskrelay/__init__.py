"""taskrelay - Task lifecycle and availability consistency engine.

This package dispatches short-lived service jobs from dispatchers to
workers, tracks each task through its lifecycle, keeps worker availability
consistent with the tasks they hold, and streams every transition to
connected clients.
"""

__version__ = "0.1.0"
