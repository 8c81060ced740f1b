"""
Database models
"""

from .security_event import SecurityEventRecord

__all__ = ["SecurityEventRecord"]
