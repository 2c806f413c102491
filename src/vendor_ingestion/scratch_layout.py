from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any

from core.settings import PARQUET_FILE_EXTENSION, PARQUET_FILE_PREFIX
from vendor_ingestion.domain import RunContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScratchLayout:
    """Filesystem layout for local files produced by a run.

    Layout:
      scratch_root/
        <run_id>/
          city_id=<city_id>/           -> exclusive to one city job
            vendors_<run_ts>.parquet
            vendors_<run_ts>.json      -> raw vendor dump (keep_raw_json)
            vendors_<run_ts>.parquet.tmp  -> while being written
    """

    scratch_root: Path
    tmp_suffix: str = ".tmp"

    # ----------------------------
    # Paths
    # ----------------------------
    def get_run_directory(self, ctx: RunContext) -> Path:
        return self.scratch_root / ctx.run_id

    def get_city_directory(self, ctx: RunContext, city_id: str) -> Path:
        return self.get_run_directory(ctx) / f"city_id={city_id}"

    def get_parquet_path(self, ctx: RunContext, city_id: str) -> Path:
        name = f"{PARQUET_FILE_PREFIX}{ctx.run_timestamp}.{PARQUET_FILE_EXTENSION}"
        return self.get_city_directory(ctx, city_id) / name

    def get_raw_json_path(self, ctx: RunContext, city_id: str) -> Path:
        return self.get_city_directory(ctx, city_id) / f"{PARQUET_FILE_PREFIX}{ctx.run_timestamp}.json"

    def get_tmp_path_for(self, final_path: Path) -> Path:
        return final_path.with_name(final_path.name + self.tmp_suffix)

    # ----------------------------
    # IO helpers
    # ----------------------------
    def ensure_directory(self, directory: Path) -> None:
        directory.mkdir(parents=True, exist_ok=True)

    def write_json(self, path: Path, payload: Any) -> None:
        """Writes JSON atomically: tmp -> rename."""
        self.ensure_directory(path.parent)
        tmp_path = self.get_tmp_path_for(path)
        tmp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False, default=str), encoding="utf-8")
        self.promote(tmp_path, path)

    def promote(self, tmp_path: Path, final_path: Path) -> None:
        """
        Move a finished tmp file over its final name with os.replace.
        A PermissionError (another process briefly holding the target open) is retried
        up to 10 times with a growing 50ms step before it propagates.
        """
        max_retries = 10
        for i in range(max_retries):
            try:
                os.replace(tmp_path, final_path)
                return
            except PermissionError:
                if i == max_retries - 1:
                    raise
                time.sleep(0.05 * (i + 1))

    def discard(self, path: Path) -> None:
        if path.exists():
            path.unlink()

    # ----------------------------
    # Cleanup
    # ----------------------------
    def delete_city_directory(self, ctx: RunContext, city_id: str) -> None:
        """
        Delete one city's scratch files, then prune empty parents up to scratch_root.
        Only called after a successful upload; failed cities keep their files.
        """
        city_dir = self.get_city_directory(ctx, city_id)
        if city_dir.exists():
            shutil.rmtree(city_dir, ignore_errors=True)
        self._prune_empty_parents(city_dir.parent)

    def _prune_empty_parents(self, start_dir: Path) -> int:
        """
        Walk upward deleting empty dirs until scratch_root is reached.
        Returns number of dirs removed.
        """
        removed = 0
        current = start_dir

        while True:
            if not current.exists() or not current.is_dir():
                break
            if current == self.scratch_root:
                break
            # stop if above scratch_root
            try:
                current.relative_to(self.scratch_root)
            except ValueError:
                break

            try:
                if any(current.iterdir()):
                    break
                current.rmdir()
                removed += 1
            except OSError:
                break

            current = current.parent

        return removed
