from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ValidationError

from .model import Post

STATE_FILE = "exporter-state.json"

logger = logging.getLogger("bookmarks.checkpointer")


class ExportCheckpoint(BaseModel):
    # Pagination state
    next_cursor: Optional[str] = None
    current_page_remainder: Optional[List[Post]] = None
    current_page_number: Optional[int] = None
    rebuild_in_progress: Optional[bool] = None

    # Boundary tracking
    previous_run_boundary_id: Optional[str] = None
    this_run_boundary_id: Optional[str] = None

    # Completion tracking
    completed: Optional[bool] = None
    completed_at: Optional[str] = None

    @property
    def has_pagination_state(self) -> bool:
        return bool(self.next_cursor or self.current_page_remainder)

    def clear_pagination(self) -> None:
        self.next_cursor = None
        self.current_page_remainder = None
        self.current_page_number = None
        self.rebuild_in_progress = None


def write_atomic(path: Path, payload: str) -> None:
    """
    Write `payload` to a sibling temp file and rename it over `path`.
    Readers see either the old document or the complete new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class Checkpointer:
    """
    JSON-backed checkpoint store, one document per output directory.

    Saves are atomic (temp file + replace) and write failures propagate:
    a checkpoint that cannot be written makes resumption unsafe.
    """

    def __init__(self, output_dir: str):
        self.path = Path(output_dir) / STATE_FILE

    async def load_progress(self) -> ExportCheckpoint:
        """
        Load the checkpoint; a missing or unreadable document yields a fresh one.
        """
        def _load() -> Optional[str]:
            if not self.path.exists():
                return None
            return self.path.read_text(encoding="utf-8")

        raw = await asyncio.to_thread(_load)
        if not raw:
            return ExportCheckpoint()
        try:
            return ExportCheckpoint.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("Could not parse %s, starting fresh: %s", self.path.name, e)
            return ExportCheckpoint()

    async def save_progress(self, checkpoint: ExportCheckpoint) -> None:
        payload = json.dumps(checkpoint.model_dump(mode="json", exclude_none=True), indent=2)
        await asyncio.to_thread(write_atomic, self.path, payload)

    async def clear_pagination(self) -> ExportCheckpoint:
        checkpoint = await self.load_progress()
        checkpoint.clear_pagination()
        await self.save_progress(checkpoint)
        return checkpoint

    async def finish_run(
        self,
        checkpoint: ExportCheckpoint,
        completed_full_scan: bool = False,
        promote_boundary: bool = True,
    ) -> None:
        """
        Close out a clean run: promote this run's boundary, drop pagination
        state and, when the whole list was scanned, stamp completion.
        """
        if promote_boundary and checkpoint.this_run_boundary_id:
            checkpoint.previous_run_boundary_id = checkpoint.this_run_boundary_id
        checkpoint.this_run_boundary_id = None

        checkpoint.clear_pagination()

        if completed_full_scan:
            checkpoint.completed = True
            checkpoint.completed_at = datetime.now(timezone.utc).isoformat()

        await self.save_progress(checkpoint)
