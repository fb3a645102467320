"""
Persistent store of match results.

Doubles as the checkpoint for interrupted runs: a target whose id is
already stored is skipped when the run is resumed.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from .migrations import apply_schema, get_current_version
from .models import MatchResult, MatchStatus


class ResultStore:
    """Manages persistent match results and run history."""

    def __init__(self, db_path: Path):
        """Initialize result store.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create tables if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        apply_schema(self.db_path)

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper error handling."""
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0,
            isolation_level="DEFERRED"
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def save(
        self,
        result: MatchResult,
        run_id: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
    ) -> None:
        """Save a result, replacing any earlier result for the same target."""
        self.save_many([result], run_id=run_id, processing_time_ms=processing_time_ms)

    def save_many(
        self,
        results: Iterable[MatchResult],
        run_id: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
    ) -> int:
        """Save several results in one transaction.

        Returns:
            Number of results written
        """
        rows = [
            (
                r.target_id,
                r.candidate_id,
                r.string_dist,
                r.spatial_dist,
                MatchStatus(r.status).value,
                r.reason,
                int(r.alignment) if r.alignment is not None else None,
                json.dumps(r.review_candidate_ids) if r.review_candidate_ids else None,
                r.period,
                run_id,
                processing_time_ms,
                datetime.now().isoformat(),
            )
            for r in results
        ]
        if not rows:
            return 0

        with self._get_connection() as conn:
            conn.executemany(
                """INSERT OR REPLACE INTO match_results (
                    target_id, candidate_id, string_dist, spatial_dist,
                    status, reason, alignment, review_candidate_ids,
                    period, run_id, processing_time_ms, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
        return len(rows)

    def get(self, target_id: str) -> Optional[MatchResult]:
        """Get the stored result for a target.

        Args:
            target_id: Target identifier

        Returns:
            MatchResult if found, None otherwise
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM match_results WHERE target_id = ?",
                (target_id,)
            ).fetchone()
            return MatchResult.from_db_row(row) if row else None

    def processed_ids(self) -> Set[str]:
        """Return ids of all targets with a stored result."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT target_id FROM match_results").fetchall()
            return {row[0] for row in rows}

    def query(
        self,
        statuses: Optional[List[MatchStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[MatchResult]:
        """Query results, optionally filtered by status, ordered by target id.

        Args:
            statuses: Statuses to include (all when None)
            limit: Maximum number of results

        Returns:
            List of matching MatchResult
        """
        conditions = []
        params: List[Any] = []

        if statuses:
            placeholders = ",".join("?" * len(statuses))
            conditions.append(f"status IN ({placeholders})")
            params.extend([MatchStatus(s).value for s in statuses])

        sql = "SELECT * FROM match_results"
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY target_id"

        if limit:
            sql += f" LIMIT {int(limit)}"

        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [MatchResult.from_db_row(row) for row in rows]

    def clear(self) -> None:
        """Delete all stored results (run history is kept)."""
        with self._get_connection() as conn:
            conn.execute("DELETE FROM match_results")

    def get_statistics(self) -> Dict[str, Any]:
        """Get result statistics.

        Returns:
            Dict with total count, counts per status and per reason
        """
        with self._get_connection() as conn:
            stats: Dict[str, Any] = {}

            stats["schema_version"] = get_current_version(conn)

            stats["total_results"] = conn.execute(
                "SELECT COUNT(*) FROM match_results"
            ).fetchone()[0]

            status_counts = conn.execute(
                """SELECT status, COUNT(*) as count
                   FROM match_results
                   GROUP BY status"""
            ).fetchall()
            stats["statuses"] = {status.value: 0 for status in MatchStatus}
            stats["statuses"].update({row[0]: row[1] for row in status_counts})

            reason_counts = conn.execute(
                """SELECT reason, COUNT(*) as count
                   FROM match_results
                   GROUP BY reason"""
            ).fetchall()
            stats["reasons"] = {row[0] or "unknown": row[1] for row in reason_counts}

            avg_dist = conn.execute(
                """SELECT AVG(string_dist), AVG(spatial_dist)
                   FROM match_results
                   WHERE status = 'matched'"""
            ).fetchone()
            stats["avg_string_dist_matched"] = avg_dist[0]
            stats["avg_spatial_dist_matched"] = avg_dist[1]

            return stats

    def record_run_start(
        self,
        run_id: str,
        config: Dict[str, Any],
        target_count: int,
    ) -> None:
        """Record run start in run history."""
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO run_history (
                    run_id, start_time, status, config, target_count
                ) VALUES (?, ?, ?, ?, ?)
            """, (
                run_id,
                datetime.now().isoformat(),
                "running",
                json.dumps(config),
                target_count,
            ))

    def record_run_end(
        self,
        run_id: str,
        status: str,
        results: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Update run status in run history.

        Args:
            run_id: Run identifier
            status: Run status (completed/interrupted/failed)
            results: Optional results dictionary
        """
        with self._get_connection() as conn:
            conn.execute("""
                UPDATE run_history
                SET end_time = ?,
                    status = ?,
                    results = ?
                WHERE run_id = ?
            """, (
                datetime.now().isoformat(),
                status,
                json.dumps(results) if results else None,
                run_id,
            ))
