"""
JSON utilities for the Mailing Workshop service
===============================================

Thin orjson wrapper returning ``str`` like the standard ``json`` module,
plus an atomic document writer used by the bundled mailing store and the
assets CLI.
"""

import os
import uuid
from pathlib import Path
from typing import Any, Callable, Optional

import orjson

JSONDecodeError = orjson.JSONDecodeError


def dumps(obj: Any, indent: Optional[int] = None, default: Optional[Callable[[Any], Any]] = None) -> str:
    """
    Serialize obj to a JSON string using orjson

    Args:
        obj: Object to serialize (datetimes and UUIDs are supported natively)
        indent: Any value pretty prints with two spaces
        default: Callable for objects orjson cannot serialize (e.g. default=str)
    """
    option = orjson.OPT_SERIALIZE_UUID | orjson.OPT_NON_STR_KEYS
    if indent is not None:
        option |= orjson.OPT_INDENT_2
    return orjson.dumps(obj, default=default, option=option).decode("utf-8")


def loads(s: Any) -> Any:
    """Deserialize a JSON ``str`` or ``bytes`` document."""
    return orjson.loads(s)


def load_path(path: Path, fallback: Any = None) -> Any:
    """Read a JSON document from disk, returning ``fallback`` when it does not exist."""
    try:
        return orjson.loads(path.read_bytes())
    except FileNotFoundError:
        return fallback


def write_atomic(path: Path, obj: Any, default: Optional[Callable[[Any], Any]] = None) -> None:
    """Write ``obj`` as JSON through a temp file so readers never see half a document."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        tmp_path.write_bytes(orjson.dumps(obj, default=default, option=orjson.OPT_INDENT_2))
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
