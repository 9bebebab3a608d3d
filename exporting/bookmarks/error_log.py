from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from .checkpointer import write_atomic

ERRORS_FILE = "errors.json"
CORRUPT_SUFFIX = ".corrupt"

logger = logging.getLogger("bookmarks.errors")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExportError(BaseModel):
    post_id: str
    message: str
    timestamp: str = Field(default_factory=_utc_now_iso)
    context: Optional[str] = None


class ErrorLog:
    """
    Append-only JSON array of per-post failures, kept for manual follow-up.

    An unreadable document is never overwritten: the next append moves it
    to errors.json.corrupt and starts a new log.
    """

    def __init__(self, output_dir: str):
        self.path = Path(output_dir) / ERRORS_FILE
        self.corrupt_path = self.path.with_name(ERRORS_FILE + CORRUPT_SUFFIX)

    async def _read(self) -> Tuple[List[ExportError], bool]:
        def _load() -> Optional[str]:
            if not self.path.exists():
                return None
            return self.path.read_text(encoding="utf-8")

        raw = await asyncio.to_thread(_load)
        if not raw:
            return [], False
        try:
            return [ExportError.model_validate(e) for e in json.loads(raw)], False
        except (ValueError, TypeError, ValidationError) as e:
            logger.warning("Could not parse %s: %s", self.path.name, e)
            return [], True

    async def load(self) -> List[ExportError]:
        errors, _ = await self._read()
        return errors

    async def append(self, error: ExportError) -> None:
        errors, corrupt = await self._read()
        if corrupt:
            await asyncio.to_thread(self.path.replace, self.corrupt_path)
            logger.warning("Moved unreadable %s aside to %s", self.path.name, self.corrupt_path.name)
        errors.append(error)
        payload = json.dumps([e.model_dump(mode="json") for e in errors], indent=2)
        await asyncio.to_thread(write_atomic, self.path, payload)

    async def record(self, post_id: str, message: str, context: Optional[str] = None) -> ExportError:
        error = ExportError(post_id=post_id, message=message, context=context)
        await self.append(error)
        return error
