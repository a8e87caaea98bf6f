"""Health monitor for capture clusters: polls, tracks issues, sends alerts."""

__version__ = "0.1.0"
