"""
NIPR Verification Queue

Serializes Producer Database verification runs (browser automation
against nipr.com) through a lease-based SQLite job queue that survives
execution-time-capped serverless invocations.
"""

__version__ = "0.3.0"
