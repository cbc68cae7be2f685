"""
Self-updater - in-place application and plugin update pipeline.

This package drives a multi-request update (prepare, download, back up,
apply, migrate, clean up) with file and database rollback on failure.
"""

__version__ = "0.1.0"
