"""
buffer/__init__.py

Public API for the buffer sub-package.
"""

from .event_buffer import GENERAL_KEY, EventBuffer, bucket_key

__all__ = ["EventBuffer", "GENERAL_KEY", "bucket_key"]
