"""
JSON files — Whole-document read/write with atomic replacement

Every collection is one JSON document. Writers never patch in place:
each write gets its own temp file in the target directory, which is then
renamed over the original, so readers see either the old complete file
or the new complete file. Two concurrent writers never share a temp file.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import orjson

from ..errors import DecodeError, StoreIOError

logger = logging.getLogger(__name__)

_DUMP_OPTIONS = orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE
TMP_SUFFIX = ".tmp"


def tmp_prefix_for(path: Path) -> str:
    """Prefix of every temp file written for `path` (`<name>.<random>.tmp`)."""
    return path.name + "."


def read_json(path: Path) -> Optional[Any]:
    """
    Read and decode a JSON document.

    Returns:
        Decoded value, or None if the file does not exist (callers
        substitute an empty collection).

    Raises:
        StoreIOError: file exists but cannot be read
        DecodeError: file content is not valid JSON
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StoreIOError(path, e) from e

    if not raw.strip():
        # Zero-byte files come from external truncation, never from write_json
        raise DecodeError(path, "empty file")
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise DecodeError(path, str(e)) from e


def dumps(value: Any) -> bytes:
    """Serialize the way knowledge files are stored (2-space indent, trailing newline)."""
    return orjson.dumps(value, option=_DUMP_OPTIONS)


def write_json(path: Path, value: Any) -> None:
    """
    Atomically replace `path` with the JSON encoding of `value`.

    Raises:
        StoreIOError: directory creation, temp write or rename failed
    """
    path = Path(path)
    data = dumps(value)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=tmp_prefix_for(path), suffix=TMP_SUFFIX)
    except OSError as e:
        raise StoreIOError(path, e) from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        try:
            os.unlink(tmp)
        except OSError:
            logger.debug("could not remove temp file %s", tmp)
        raise StoreIOError(path, e) from e
    logger.debug("wrote %s (%d bytes)", path, len(data))
