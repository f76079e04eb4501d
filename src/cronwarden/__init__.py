"""
cronwarden - single-host cron job runner.
"""
__version__ = "0.1.0"
