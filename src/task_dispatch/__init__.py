"""Poll a task database and hand claimed tasks to a coding agent."""

__version__ = "0.1.0"
