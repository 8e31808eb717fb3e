import logging
import os
import re
import uuid
from pathlib import Path

from fastapi import HTTPException

from app.services.pipeline_errors import PathTraversalError

logger = logging.getLogger(__name__)

_GIT_REF_RE = re.compile(r"^[A-Za-z0-9._/-]{1,255}$")
_SLUG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,119}$")


def coerce_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid UUID: {value!r}") from exc


def validate_git_ref(value: str, label: str = "branch") -> str:
    if not _GIT_REF_RE.match(value) or ".." in value or value.startswith("-") or value.endswith(".lock"):
        raise ValueError(f"Invalid {label}: {value!r}")
    return value


def safe_slug(value: str) -> str:
    """Stack ids name directories and compose projects; keep them path-safe."""
    if not value or not _SLUG_RE.match(value) or ".." in value:
        raise ValueError(f"Invalid stack id: {value!r}")
    return value


def resolve_inside(root: str | os.PathLike, relative: str) -> Path:
    """Resolve ``relative`` under ``root``; reject anything that lands outside it.

    A lexical check runs first, so ``../`` escapes are refused without any
    filesystem access; symlinks inside the root are then resolved and
    checked again.
    """
    base = Path(root).resolve()
    if not relative:
        return base
    if "\x00" in relative:
        raise PathTraversalError("Path contains a NUL byte")
    candidate = Path(relative)
    if candidate.is_absolute():
        raise PathTraversalError(f"Absolute paths are not allowed: {relative!r}")
    lexical = Path(os.path.normpath(base / candidate))
    if lexical != base and base not in lexical.parents:
        raise PathTraversalError(f"Path escapes the repository root: {relative!r}")
    resolved = lexical.resolve()
    if resolved != base and base not in resolved.parents:
        raise PathTraversalError(f"Path escapes the repository root: {relative!r}")
    return resolved


def redact_url(url: str) -> str:
    if url.startswith(("http://", "https://")) and "@" in url:
        scheme, rest = url.split("://", 1)
        if "@" in rest.split("/", 1)[0]:
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return url
