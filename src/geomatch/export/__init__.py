"""
Export module for run reporting.

Provides:
- Statistics (aggregated status, reason and score metrics)
"""

from .statistics_aggregator import StatisticsAggregator

__all__ = [
    'StatisticsAggregator',
]
