"""
Record loader utilities.

Converts already-cleaned tabular and vector data into typed records:
- Targets from CSV/Excel (one row per target and period)
- Candidates from CSV/Excel (planar x/y columns) or any vector file
- Regions from any vector file readable by geopandas
"""

import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import geopandas as gpd
import pandas as pd

from ..cache.models import Candidate, Region, Target, TargetPeriod

logger = logging.getLogger(__name__)


class RecordLoader:
    """Loads targets, candidates and regions from files or DataFrames."""

    TABULAR_EXTENSIONS = {'.csv', '.xlsx', '.xls'}

    # Column mapping: {standard_name: [possible_variants]}
    COLUMN_MAPPING = {
        'target_id': ['target_id', 'TargetID', 'school_id', 'id'],
        'candidate_id': ['candidate_id', 'CandidateID', 'point_id'],
        'region_id': ['region_id', 'RegionID', 'unit_id'],
        'period': ['period', 'Period', 'year', 'Year'],
        'truncated_name': ['truncated_name', 'name_trunc', 'short_name'],
        'name': ['name', 'Name'],
        'type': ['type', 'Type'],
        'subtype': ['subtype', 'Subtype', 'sub_type'],
        'blocking_key': ['blocking_key', 'constituency_code', 'block_key'],
        'lower_admin_ref': ['lower_admin_ref', 'sublocation', 'ward'],
        'source': ['source', 'Source'],
        'accurate': ['accurate', 'accuracy_flag'],
        'level': ['level', 'Level'],
        'valid_from': ['valid_from', 'start_year'],
        'valid_to': ['valid_to', 'end_year'],
    }

    def __init__(self, normalize_columns: bool = True):
        """Initialize record loader.

        Args:
            normalize_columns: Whether to normalize column names (default: True)
        """
        self.normalize_columns = normalize_columns

    def load_targets(self, source: Union[str, Path, pd.DataFrame]) -> List[Target]:
        """Load targets, grouping rows by target id.

        Raises:
            ValueError: If required columns are missing
        """
        df = self._read_table(source)
        self._require(df, ['target_id', 'truncated_name', 'blocking_key'], "targets")

        periods_by_target: Dict[str, Dict[int, TargetPeriod]] = {}
        for _, row in df.iterrows():
            target_id = str(row['target_id'])
            period = _int(row.get('period'))
            entry = TargetPeriod(
                truncated_name=_text(row.get('truncated_name')) or "",
                type=_text(row.get('type')),
                subtype=_text(row.get('subtype')),
                blocking_key=str(row['blocking_key']),
                lower_admin_ref=_text(row.get('lower_admin_ref')),
            )
            periods = periods_by_target.setdefault(target_id, {})
            key = period if period is not None else 0
            if key in periods:
                logger.warning(f"Duplicate period {key} for target {target_id}; keeping the first row")
                continue
            periods[key] = entry

        targets = [
            Target(target_id=target_id, periods=periods)
            for target_id, periods in periods_by_target.items()
        ]
        logger.info(f"Loaded {len(targets)} targets from {len(df)} rows")
        return targets

    def load_candidates(self, source: Union[str, Path, pd.DataFrame]) -> List[Candidate]:
        """Load candidates from a table with x/y columns or a point layer."""
        df = self._read_any(source)
        if isinstance(df, gpd.GeoDataFrame) and 'x' not in df.columns:
            df = df.assign(x=df.geometry.x, y=df.geometry.y)
        self._require(df, ['candidate_id', 'x', 'y', 'name'], "candidates")

        candidates = []
        skipped = 0
        for _, row in df.iterrows():
            x, y = _float(row.get('x')), _float(row.get('y'))
            if x is None or y is None:
                skipped += 1
                continue
            candidates.append(Candidate(
                candidate_id=str(row['candidate_id']),
                x=x,
                y=y,
                name=_text(row.get('name')) or "",
                type=_text(row.get('type')),
                subtype=_text(row.get('subtype')),
                source=_text(row.get('source')),
                accurate=_bool(row.get('accurate')),
            ))

        if skipped:
            logger.warning(f"Skipped {skipped} candidates without coordinates")
        logger.info(f"Loaded {len(candidates)} candidates")
        return candidates

    def load_regions(self, source: Union[str, Path, gpd.GeoDataFrame]) -> List[Region]:
        """Load regions from a polygon layer."""
        if isinstance(source, gpd.GeoDataFrame):
            gdf = source
        else:
            path = Path(source)
            if not path.exists():
                raise FileNotFoundError(f"Region file not found: {path}")
            logger.info(f"Loading regions from {path}")
            gdf = gpd.read_file(path)
        if self.normalize_columns:
            gdf = self._normalize_columns(gdf)
        self._require(gdf, ['region_id', 'level', 'blocking_key'], "regions")

        regions = [
            Region(
                region_id=str(row['region_id']),
                geometry=row.geometry,
                level=str(row['level']),
                blocking_key=str(row['blocking_key']),
                name=_text(row.get('name')),
                valid_from=_int(row.get('valid_from')),
                valid_to=_int(row.get('valid_to')),
            )
            for _, row in gdf.iterrows()
        ]
        logger.info(f"Loaded {len(regions)} regions")
        return regions

    def _read_any(self, source: Union[str, Path, pd.DataFrame]) -> pd.DataFrame:
        if isinstance(source, pd.DataFrame):
            return self._normalize_columns(source) if self.normalize_columns else source
        path = Path(source)
        if path.suffix.lower() in self.TABULAR_EXTENSIONS:
            return self._read_table(path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {path}")
        gdf = gpd.read_file(path)
        return self._normalize_columns(gdf) if self.normalize_columns else gdf

    def _read_table(self, source: Union[str, Path, pd.DataFrame]) -> pd.DataFrame:
        """Load a single CSV or Excel file (or pass a DataFrame through).

        Raises:
            FileNotFoundError: If path doesn't exist
            ValueError: If file format not supported
        """
        if isinstance(source, pd.DataFrame):
            df = source
        else:
            path = Path(source)
            if not path.exists():
                raise FileNotFoundError(f"File not found: {path}")

            ext = path.suffix.lower()
            if ext == '.csv':
                df = pd.read_csv(path, dtype=str, keep_default_na=False, na_values=[''])
            elif ext in {'.xlsx', '.xls'}:
                df = pd.read_excel(path, dtype=str)
            else:
                raise ValueError(f"Unsupported file format: {ext}")

        if self.normalize_columns:
            df = self._normalize_columns(df)
        return df

    def _normalize_columns(self, df: pd.DataFrame) -> pd.DataFrame:
        """Rename known column variants to standard names."""
        rename_map = {}
        for standard_name, variants in self.COLUMN_MAPPING.items():
            if standard_name in df.columns:
                continue
            for variant in variants:
                if variant in df.columns and variant not in rename_map:
                    rename_map[variant] = standard_name
                    break  # Use first match only

        if rename_map:
            df = df.rename(columns=rename_map)
            logger.debug(f"Normalized columns: {rename_map}")

        return df

    @staticmethod
    def _require(df: pd.DataFrame, columns: List[str], kind: str) -> None:
        missing = [c for c in columns if c not in df.columns]
        if missing:
            raise ValueError(f"Missing required {kind} columns: {', '.join(missing)}")


def _missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _text(value: Any) -> Optional[str]:
    return None if _missing(value) else str(value).strip()


def _float(value: Any) -> Optional[float]:
    return None if _missing(value) else float(value)


def _int(value: Any) -> Optional[int]:
    return None if _missing(value) else int(float(value))


def _bool(value: Any) -> Optional[bool]:
    if _missing(value):
        return None
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'y', 't')
    return bool(value)
