"""
Statistics aggregator for match results.

Generates aggregated statistics for:
- Counts per terminal status
- Reason code distribution
- Score distributions of matched targets
- Per-block outcomes
- Partition and timing figures for the run
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from ..cache.models import MatchResult, MatchStatus


class StatisticsAggregator:
    """Generate statistical summaries of match results."""

    def __init__(self, output_dir: Path):
        """Initialize statistics aggregator.

        Args:
            output_dir: Directory for statistics output files
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def results_frame(results: List[MatchResult]) -> pd.DataFrame:
        """Flatten results into a DataFrame (one row per target)."""
        columns = [
            "target_id", "candidate_id", "string_dist", "spatial_dist",
            "status", "reason", "alignment", "review_candidate_ids", "period",
        ]
        return pd.DataFrame([r.to_dict() for r in results], columns=columns)

    def status_counts(self, results: List[MatchResult]) -> Dict[str, int]:
        """Count results per status, including statuses with no results."""
        counts = {status.value: 0 for status in MatchStatus}
        for result in results:
            counts[MatchStatus(result.status).value] += 1
        return counts

    def generate_summary(
        self,
        results: List[MatchResult],
        partition_stats: Optional[Dict[str, Any]] = None,
        run_info: Optional[Dict[str, Any]] = None,
        output_name: str = "match_summary.json",
        block_of: Optional[Dict[str, str]] = None,
    ) -> Path:
        """Generate overall summary statistics.

        Args:
            results: Match results of the run
            partition_stats: PartitionStatistics.to_dict() of the blocking pass
            run_info: Run figures (ids, timings, skipped/not dispatched counts)
            output_name: Output filename
            block_of: Optional target id to blocking key mapping for per-block counts

        Returns:
            Path to JSON file with summary stats
        """
        df = self.results_frame(results)
        total = int(df.shape[0])

        summary: Dict[str, Any] = {
            'total_targets': total,
            'statuses': self.status_counts(results),
            'rates': {},
            'reasons': {},
        }

        for status, count in summary['statuses'].items():
            summary['rates'][status] = round(count / total, 4) if total else 0.0

        if total:
            reason_counts = df['reason'].fillna('unknown').value_counts()
            summary['reasons'] = {
                str(k): int(v) for k, v in sorted(reason_counts.items())
            }

        matched = df[df['status'] == MatchStatus.MATCHED.value]
        if not matched.empty:
            summary['matched_scores'] = {
                'string_dist': self._describe(matched['string_dist']),
                'spatial_dist': self._describe(matched['spatial_dist']),
            }
            alignment_counts = matched['alignment'].dropna().astype(int).value_counts()
            summary['matched_alignment'] = {
                str(k): int(v) for k, v in sorted(alignment_counts.items())
            }

        if block_of:
            summary['blocks'] = self._per_block(df, block_of)

        if partition_stats is not None:
            summary['partition'] = partition_stats
        if run_info is not None:
            summary['run'] = run_info

        summary['generated'] = datetime.now().isoformat()

        output_path = self.output_dir / output_name
        with open(output_path, 'w') as f:
            json.dump(summary, f, indent=2)

        return output_path

    @staticmethod
    def _describe(series: pd.Series) -> Dict[str, Optional[float]]:
        values = series.dropna().astype(float)
        if values.empty:
            return {'mean': None, 'median': None, 'p90': None, 'max': None}
        return {
            'mean': float(values.mean()),
            'median': float(values.median()),
            'p90': float(np.percentile(values, 90)),
            'max': float(values.max()),
        }

    @staticmethod
    def _per_block(df: pd.DataFrame, block_of: Dict[str, str]) -> Dict[str, Dict[str, int]]:
        keyed = df.assign(block=df['target_id'].map(block_of).fillna('unknown'))
        table = pd.crosstab(keyed['block'], keyed['status'])
        blocks = {}
        for key, row in table.iterrows():
            counts = {status.value: 0 for status in MatchStatus}
            counts.update({str(k): int(v) for k, v in row.items()})
            blocks[str(key)] = counts
        return blocks
