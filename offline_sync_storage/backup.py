"""
Backup files for exported data.

Exports are written as a single JSON document using temp file + rename,
so a crash mid-write never leaves a truncated backup behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from .exceptions import StorageError, ValidationError
from .providers.base import StorageProvider


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


async def write_backup(path: Path | str, data: dict[str, Any]) -> Path:
    """Write ``data`` to ``path`` atomically.

    Raises:
        StorageError: If the file cannot be written
    """
    path = Path(path)
    try:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
    except OSError as e:
        raise StorageError(
            f"Cannot create backup directory: {path.parent}", "backup", "write", e
        ) from e

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=".json")
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, default=_json_serializer))
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.replace(temp_path, path)
    except (OSError, TypeError, ValueError) as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageError(f"Failed to write backup: {path}", "backup", "write", e) from e
    return path


async def read_backup(path: Path | str) -> dict[str, Any]:
    """Read a backup written by ``write_backup``.

    Raises:
        StorageError: If the file is missing or unreadable
        ValidationError: If the content is not a JSON object
    """
    path = Path(path)
    try:
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
    except OSError as e:
        raise StorageError(f"Failed to read backup: {path}", "backup", "read", e) from e

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Backup is not valid JSON: {path}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Backup must contain a JSON object: {path}")
    return data


async def backup_provider(provider: StorageProvider, path: Path | str) -> Path:
    """Export every synced table from ``provider`` into a backup file."""
    return await write_backup(path, await provider.export_all_data())


async def restore_provider(provider: StorageProvider, path: Path | str) -> None:
    """Import a backup file into ``provider``."""
    await provider.import_all_data(await read_backup(path))
