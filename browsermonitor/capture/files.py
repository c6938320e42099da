"""Async file helpers for dump artifacts."""

from pathlib import Path
from typing import Union

import aiofiles
import aiofiles.os


async def write_atomic(path: Path, data: Union[str, bytes]) -> None:
    """Write a file through a temporary sibling and an atomic replace."""
    await aiofiles.os.makedirs(path.parent, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    if isinstance(data, bytes):
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
    else:
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(data)
    await aiofiles.os.replace(tmp_path, path)


async def reset_dir(path: Path, suffix: str = ".json") -> int:
    """Create ``path`` if needed and delete its ``suffix`` files. Returns the count removed."""
    await aiofiles.os.makedirs(path, exist_ok=True)
    removed = 0
    for name in await aiofiles.os.listdir(path):
        if name.endswith(suffix):
            await aiofiles.os.remove(path / name)
            removed += 1
    return removed
