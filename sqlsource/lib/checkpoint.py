"""Durable watermark checkpoints.

The checkpoint is a single JSON object mapping table names to their
position as an integer string::

    {"dbo.orders": "20250115103000", "dbo.events": "4711"}

Every save replaces the whole file through a temp file in the same
directory, so a crash leaves either the old or the new content. A file that
cannot be parsed is moved aside as ``<name>.bak.<epoch-millis>`` and every
configured table restarts from its default position.

Only one process may write a given checkpoint file; there is no
cross-process locking.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Union

from sqlsource.lib.errors import CheckpointError
from sqlsource.lib.watermark import TableSpec, Watermark, build_watermarks

logger = logging.getLogger(__name__)

__all__ = ["CheckpointStore"]

_POSITION_PATTERN = re.compile(r"-?[0-9]+")


def _now_millis() -> int:
    return int(time.time() * 1000)


class CheckpointStore:
    """Load and persist per-table watermark positions.

    Example:
        store = CheckpointStore("/var/lib/sqlsource/orders.status")
        watermarks = store.load(tables)
        ...
        store.save(watermarks)
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._stored: Dict[str, str] = {}

    def read(self) -> Dict[str, str]:
        """Return the raw stored mapping.

        Raises:
            CheckpointError: If the file cannot be read or is malformed
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CheckpointError(
                "Cannot read checkpoint file", path=str(self.path), cause=exc
            ) from exc

        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise CheckpointError(
                "Checkpoint file is not valid JSON", path=str(self.path), cause=exc
            ) from exc

        if not isinstance(data, dict):
            raise CheckpointError(
                f"Checkpoint must be a JSON object, got {type(data).__name__}",
                path=str(self.path),
            )

        stored: Dict[str, str] = {}
        for name, value in data.items():
            if isinstance(value, bool) or not isinstance(value, (str, int)):
                raise CheckpointError(
                    f"Checkpoint entry {name!r} has a non-integer value {value!r}",
                    path=str(self.path),
                )
            text_value = str(value).strip()
            if not _POSITION_PATTERN.fullmatch(text_value):
                raise CheckpointError(
                    f"Checkpoint entry {name!r} has a non-integer value {value!r}",
                    path=str(self.path),
                )
            stored[name] = text_value
        return stored

    def load(self, tables: Sequence[TableSpec]) -> Dict[str, Watermark]:
        """Build the watermarks for the configured tables.

        Tables without a stored entry start from their configured
        ``start_from`` or the indicator type default. Stored entries for
        tables that are no longer configured are kept in the file.

        Never raises: a corrupt file is backed up and replaced.
        """
        watermarks = build_watermarks(tables)

        if not self.path.exists():
            logger.info("No checkpoint at %s, starting from defaults", self.path)
            self._stored = {}
            self._write_quietly(watermarks)
            return watermarks

        try:
            stored = self.read()
        except CheckpointError as exc:
            logger.warning("Corrupt checkpoint %s: %s", self.path, exc.message)
            self.backup_corrupt()
            self._stored = {}
            self._write_quietly(watermarks)
            return watermarks

        self._stored = stored
        for name, watermark in watermarks.items():
            if name in stored:
                watermark.position = int(stored[name])
                logger.debug("Loaded watermark %s=%s", name, stored[name])
            else:
                logger.info(
                    "No checkpoint entry for %s, starting at %s",
                    name,
                    watermark.current_position(),
                )

        unknown = sorted(set(stored) - set(watermarks))
        if unknown:
            logger.debug("Keeping checkpoint entries for unconfigured tables: %s", unknown)
        return watermarks

    def save(self, watermarks: Mapping[str, Watermark]) -> None:
        """Atomically write all positions.

        Raises:
            CheckpointError: If the file cannot be written
        """
        data = dict(self._stored)
        for name, watermark in watermarks.items():
            data[name] = str(watermark.current_position())

        directory = self.path.parent
        tmp_name: Optional[str] = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=str(directory)
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as exc:
            raise CheckpointError(
                "Failed to write checkpoint", path=str(self.path), cause=exc
            ) from exc
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)

        self._stored = data
        logger.debug("Saved checkpoint %s (%d entries)", self.path, len(data))

    def backup_corrupt(self) -> Optional[Path]:
        """Move the current file aside as ``<name>.bak.<epoch-millis>``.

        The suffix is bumped until the name is unused, so an earlier backup
        is never overwritten.

        Returns:
            The backup path, or None if there was nothing to back up or the
            move failed
        """
        if not self.path.exists():
            return None

        millis = _now_millis()
        backup = self.path.with_name(f"{self.path.name}.bak.{millis}")
        while backup.exists():
            millis += 1
            backup = self.path.with_name(f"{self.path.name}.bak.{millis}")

        try:
            os.replace(self.path, backup)
        except OSError as exc:
            logger.error("Could not back up corrupt checkpoint %s: %s", self.path, exc)
            return None

        logger.warning("Backed up corrupt checkpoint to %s", backup)
        return backup

    def _write_quietly(self, watermarks: Mapping[str, Watermark]) -> None:
        try:
            self.save(watermarks)
        except CheckpointError as exc:
            logger.error("Could not write initial checkpoint: %s", exc)
