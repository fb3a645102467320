"""
Block artifacts on disk.

One GeoPackage per blocking key with ``candidates``, ``regions`` and
``boundary`` layers, plus a JSON manifest. Each block can be read on its
own, so a resumed run only loads the blocks its remaining targets need.
"""

import hashlib
import json
import logging
import math
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import fiona
import geopandas as gpd
import pandas as pd

from ..core.partitioner import Block
from .models import Candidate, Region

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"


class BlockStore:
    """Reads and writes block artifacts."""

    def __init__(self, block_dir: Path, crs: Optional[str] = None):
        """Initialize block store.

        Args:
            block_dir: Directory holding one GeoPackage per blocking key
            crs: Projected CRS of the geometries (optional, recorded in the files)
        """
        self.block_dir = Path(block_dir)
        self.crs = crs

    @property
    def manifest_path(self) -> Path:
        return self.block_dir / MANIFEST_NAME

    @staticmethod
    def filename_for(key: str) -> str:
        """Return a filesystem-safe, collision-free file name for ``key``."""
        slug = re.sub(r'[^A-Za-z0-9_.-]+', '_', key).strip('_') or "block"
        digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8]
        return f"{slug[:60]}_{digest}.gpkg"

    def exists(self) -> bool:
        return self.manifest_path.exists()

    def save(
        self,
        blocks: Mapping[str, Block],
        statistics: Optional[Dict[str, Any]] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Write every block and the manifest.

        Args:
            blocks: Blocking key to Block
            statistics: Partition statistics to keep alongside the blocks
            settings: Settings the blocks were built with

        Returns:
            Path to the manifest
        """
        self.block_dir.mkdir(parents=True, exist_ok=True)

        files = {}
        for key in sorted(blocks):
            files[key] = self.save_block(blocks[key])

        manifest = {
            "created_at": datetime.now().isoformat(),
            "crs": self.crs,
            "blocks": files,
            "statistics": statistics or {},
            "settings": settings or {},
        }
        with open(self.manifest_path, 'w') as f:
            json.dump(manifest, f, indent=2)

        logger.info(f"Saved {len(files)} blocks to {self.block_dir}")
        return self.manifest_path

    def save_block(self, block: Block) -> str:
        """Write one block to its GeoPackage and return the file name."""
        filename = self.filename_for(block.key)
        path = self.block_dir / filename
        if path.exists():
            path.unlink()

        mode = 'w'
        if block.candidates:
            self._candidates_frame(block.candidates).to_file(
                path, layer='candidates', driver='GPKG', mode=mode
            )
            mode = 'a'
        if block.regions:
            self._regions_frame(block.regions).to_file(
                path, layer='regions', driver='GPKG', mode=mode
            )
            mode = 'a'
        if block.boundary is not None:
            gpd.GeoDataFrame(
                {"key": [block.key]}, geometry=[block.boundary], crs=self.crs
            ).to_file(path, layer='boundary', driver='GPKG', mode=mode)
            mode = 'a'

        if mode == 'w':
            # Nothing to write; an empty marker keeps the key in the manifest
            path.touch()

        return filename

    def manifest(self) -> Dict[str, Any]:
        """Load the manifest.

        Raises:
            FileNotFoundError: If no blocks were saved in block_dir
        """
        if not self.manifest_path.exists():
            raise FileNotFoundError(f"Block manifest not found: {self.manifest_path}")
        with open(self.manifest_path, 'r') as f:
            return json.load(f)

    def keys(self) -> List[str]:
        return sorted(self.manifest()["blocks"])

    def load(self, key: str) -> Optional[Block]:
        """Load a single block, or None if the key was never saved."""
        filename = self.manifest()["blocks"].get(key)
        if filename is None:
            return None
        return self._load_file(key, self.block_dir / filename)

    def load_all(self, keys: Optional[Iterable[str]] = None) -> Dict[str, Block]:
        """Load the given blocks (all when ``keys`` is None); unknown keys are skipped."""
        files = self.manifest()["blocks"]
        wanted = sorted(files) if keys is None else sorted(set(keys) & set(files))

        blocks = {}
        for key in wanted:
            blocks[key] = self._load_file(key, self.block_dir / files[key])

        logger.info(f"Loaded {len(blocks)} of {len(files)} blocks from {self.block_dir}")
        return blocks

    def _load_file(self, key: str, path: Path) -> Block:
        if not path.exists():
            raise FileNotFoundError(f"Block file not found for key {key!r}: {path}")

        layers = set(fiona.listlayers(str(path))) if path.stat().st_size > 0 else set()

        candidates = ()
        if 'candidates' in layers:
            gdf = gpd.read_file(path, layer='candidates')
            candidates = tuple(self._candidate_from_row(row) for _, row in gdf.iterrows())

        regions = ()
        if 'regions' in layers:
            gdf = gpd.read_file(path, layer='regions')
            regions = tuple(self._region_from_row(row) for _, row in gdf.iterrows())

        boundary = None
        if 'boundary' in layers:
            gdf = gpd.read_file(path, layer='boundary')
            if not gdf.empty:
                boundary = gdf.geometry.iloc[0]

        return Block(key=key, candidates=candidates, regions=regions, boundary=boundary)

    def _candidates_frame(self, candidates: Iterable[Candidate]) -> gpd.GeoDataFrame:
        records = [
            {
                "candidate_id": c.candidate_id,
                "name": c.name,
                "type": c.type,
                "subtype": c.subtype,
                "source": c.source,
                # nullable flag stored as 1/0/NULL
                "accurate": float(c.accurate) if c.accurate is not None else None,
                "x": c.x,
                "y": c.y,
            }
            for c in candidates
        ]
        df = pd.DataFrame.from_records(records)
        df["accurate"] = df["accurate"].astype(float)
        return gpd.GeoDataFrame(
            df, geometry=gpd.points_from_xy(df.x, df.y), crs=self.crs
        )

    def _regions_frame(self, regions: Iterable[Region]) -> gpd.GeoDataFrame:
        records = [
            {
                "region_id": r.region_id,
                "level": r.level,
                "blocking_key": r.blocking_key,
                "name": r.name,
                "valid_from": float(r.valid_from) if r.valid_from is not None else None,
                "valid_to": float(r.valid_to) if r.valid_to is not None else None,
                "geometry": r.geometry,
            }
            for r in regions
        ]
        df = pd.DataFrame.from_records(records)
        for column in ("valid_from", "valid_to"):
            df[column] = df[column].astype(float)
        return gpd.GeoDataFrame(df, geometry="geometry", crs=self.crs)

    @staticmethod
    def _candidate_from_row(row: pd.Series) -> Candidate:
        return Candidate(
            candidate_id=str(row["candidate_id"]),
            x=float(row["x"]),
            y=float(row["y"]),
            name=_text(row.get("name")) or "",
            type=_text(row.get("type")),
            subtype=_text(row.get("subtype")),
            source=_text(row.get("source")),
            accurate=None if _missing(row.get("accurate")) else bool(row["accurate"]),
        )

    @staticmethod
    def _region_from_row(row: pd.Series) -> Region:
        return Region(
            region_id=str(row["region_id"]),
            geometry=row["geometry"],
            level=str(row["level"]),
            blocking_key=str(row["blocking_key"]),
            name=_text(row.get("name")),
            valid_from=None if _missing(row.get("valid_from")) else int(row["valid_from"]),
            valid_to=None if _missing(row.get("valid_to")) else int(row["valid_to"]),
        )


def _missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return math.isnan(value)
    except TypeError:
        return False


def _text(value: Any) -> Optional[str]:
    if _missing(value):
        return None
    text = str(value)
    return text if text else None
