"""Storage for extracted DCE files.

Files are written under DCE_STORAGE_DIR and served under DCE_PUBLIC_PREFIX.
Anything exposing `async upload(data, filename) -> url` can replace it.
"""
import asyncio
import logging
import re
import uuid
from pathlib import Path, PurePosixPath
from typing import Optional

from tendersniper.core.config import get_settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def safe_filename(original_name: str) -> str:
    """uuid-prefixed, path-free, ASCII-only name."""
    base = PurePosixPath(original_name.replace("\\", "/")).name or "file"
    return f"{uuid.uuid4()}-{_UNSAFE_CHARS.sub('_', base)}"


class LocalStorage:
    def __init__(self, root: Optional[str] = None, public_prefix: Optional[str] = None):
        settings = get_settings()
        self.root = Path(root or settings.dce_storage_dir)
        self.public_prefix = (public_prefix or settings.dce_public_prefix).rstrip("/")

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def upload(self, data: bytes, filename: str) -> str:
        """Store bytes and return the public URL."""
        name = safe_filename(filename)
        await asyncio.to_thread(self._write, self.root / name, data)
        logger.debug(f"Storage: saved {filename} as {name} ({len(data)} bytes)")
        return f"{self.public_prefix}/{name}"
