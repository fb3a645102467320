"""
Input adapters for targets, candidates and regions.
"""

from .record_loader import RecordLoader

__all__ = ["RecordLoader"]
