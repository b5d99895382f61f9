# keys.py
from __future__ import annotations

import hashlib
import platform
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Optional

from .errors import ConfigError

# {{ .Branch }}  {{ checksum "Cargo.lock" }}  {{ .Environment.CC }}
_TEMPLATE = re.compile(r"\{\{\s*(.*?)\s*\}\}")
_CHECKSUM = re.compile(r'^checksum\s+"([^"]+)"$')
_ENV = re.compile(r"^\.Environment\.([A-Za-z_][A-Za-z0-9_]*)$")


@dataclass
class KeyContext:
    """Values a cache key template may refer to."""
    workspace: Path
    branch: str = ""
    environment: Mapping[str, str] = field(default_factory=dict)
    revision: Optional[Callable[[], str]] = None  # lazy, needs git


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _arch() -> str:
    return f"{platform.system().lower()}-{platform.machine().lower()}"


def _expand(expr: str, ctx: KeyContext, template: str) -> str:
    if expr == ".Branch":
        return ctx.branch
    if expr == ".Revision":
        if ctx.revision is None:
            raise ConfigError(None, f"cache key {template!r}: no revision available")
        return ctx.revision()
    if expr == "epoch":
        return str(int(time.time()))
    if expr == "arch":
        return _arch()

    m = _ENV.match(expr)
    if m:
        return ctx.environment.get(m.group(1), "")

    m = _CHECKSUM.match(expr)
    if m:
        target = (ctx.workspace / m.group(1)).resolve()
        if not target.is_file():
            raise ConfigError(None, f"cache key {template!r}: checksum target not found", {"file": str(target)})
        return _hash_file_contents(target)

    raise ConfigError(None, f"cache key {template!r}: unsupported template expression {{{{ {expr} }}}}")


def render_key(template: str, ctx: KeyContext) -> str:
    """
    Expand `{{ ... }}` expressions in a cache key.

    A key without templates (e.g. "dependencies") is returned unchanged.
    """
    return _TEMPLATE.sub(lambda m: _expand(m.group(1), ctx, template), template)
