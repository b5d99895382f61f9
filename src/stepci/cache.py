# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import tarfile
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import CacheUnavailable
from .model import CacheEntry
from .settings import DEFAULT_CACHE_DIR

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
# One artifact per cache key:
#
#   root/
#     <sha256(key)>.tar.gz
#
# Inside the archive:
#   .stepci/manifest.json    key, declared paths, created_at
#   workspace/<relpath>      files declared relative to the project
#   home/<relpath>           files declared as ~/...
#   root/<abspath>           files declared with an absolute path
#
# Saves build the archive in a temp file and os.replace() it into place,
# so a reader holding the old file keeps seeing the old entry in full.
# ---------------------------------------------------------------------

MANIFEST_NAME = ".stepci/manifest.json"
_GLOB_CHARS = set("*?[")


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file() or p.is_symlink():
            yield p


def _split_declared(path: str) -> Tuple[str, str]:
    """
    Map a declared cache path onto (destination, relative pattern).

      "~"            -> ("home", ".")
      "~/.cargo"     -> ("home", ".cargo")
      "/opt/x"       -> ("root", "opt/x")
      ".servo"       -> ("workspace", ".servo")
    """
    path = path.strip()
    if path == "~":
        return "home", "."
    if path.startswith("~/"):
        return "home", path[2:].lstrip("/") or "."
    if path.startswith("/"):
        return "root", path.lstrip("/") or "."
    return "workspace", path


def _resolve_declared(roots: Dict[str, Path], declared: Sequence[str]) -> List[Tuple[str, Path, Path]]:
    """
    Expand declared paths/globs into (destination, base, file) triples.
    Paths that do not exist are skipped.
    """
    out: List[Tuple[str, Path, Path]] = []
    seen = set()

    for pat in declared:
        if not pat or not pat.strip():
            continue
        dest, rel = _split_declared(pat)
        base = roots[dest]

        if _GLOB_CHARS & set(rel):
            matches = sorted(base.glob(rel))
        else:
            p = base / rel
            matches = [p] if (p.exists() or p.is_symlink()) else []

        for m in matches:
            m = Path(os.path.normpath(m.absolute()))
            files = _iter_files_under(m) if (m.is_dir() and not m.is_symlink()) else [m]
            for f in files:
                f_dest, f_base = dest, base
                if f_base != f and f_base not in f.parents:
                    # "../sibling" and the like are stored by absolute path
                    f_dest, f_base = "root", roots["root"]
                key = (f_dest, str(f))
                if key not in seen:
                    seen.add(key)
                    out.append((f_dest, f_base, f))
    return out


def _within(base: Path, path: Path) -> bool:
    return path == base or base in path.parents


def _extract_kwargs() -> dict:
    # tarfile extraction filters exist on 3.12+ (and security backports).
    # "tar" rather than "data": toolchain dirs carry absolute symlinks.
    return {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}


class CacheStore:
    """
    File-based, key-addressed cache shared by every job of a run.

    Writes to a key are serialized by a per-key lock. Reads take no lock.
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{_sha256_str(key)}.tar.gz"

    # -----------------------------------------------------------------
    # restore
    # -----------------------------------------------------------------

    def restore(
        self,
        key: str,
        *,
        workspace: str | Path | None = None,
        home: str | Path | None = None,
    ) -> Optional[CacheEntry]:
        """
        Look up `key` and, when destinations are given, extract its files.

        Returns None on a miss. Raises CacheUnavailable if the store or the
        artifact cannot be read.
        """
        art = self.artifact_path(key)
        try:
            # Holding the file object pins this generation even if a writer
            # replaces the artifact meanwhile.
            fh = art.open("rb")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheUnavailable(step=f"restore {key}", message=f"cannot open cache artifact: {e}") from e

        try:
            with fh, tarfile.open(fileobj=fh, mode="r:gz") as tar:
                manifest = self._read_manifest(tar)
                if manifest.get("key") != key:
                    # sha collision or foreign file; treat as absent
                    return None
                entry = CacheEntry(
                    key=key,
                    paths=tuple(manifest.get("paths", [])),
                    artifact=art,
                    created_at=datetime.fromisoformat(manifest["created_at"]),
                    files=int(manifest.get("files", 0)),
                )
                if workspace is not None or home is not None:
                    roots = {
                        "workspace": Path(workspace).resolve() if workspace is not None else None,
                        "home": Path(home).resolve() if home is not None else None,
                        "root": Path("/"),
                    }
                    self._extract(tar, roots)
        except (OSError, tarfile.TarError, ValueError, KeyError) as e:
            raise CacheUnavailable(step=f"restore {key}", message=f"cache artifact unreadable: {e}") from e

        return entry

    def restore_first(
        self,
        keys: Sequence[str],
        *,
        workspace: str | Path | None = None,
        home: str | Path | None = None,
    ) -> Optional[CacheEntry]:
        """Try candidate keys in order; the first one present wins."""
        for key in keys:
            entry = self.restore(key, workspace=workspace, home=home)
            if entry is not None:
                return entry
        return None

    @staticmethod
    def _read_manifest(tar: tarfile.TarFile) -> dict:
        member = tar.getmember(MANIFEST_NAME)
        f = tar.extractfile(member)
        if f is None:
            raise ValueError("manifest is not a regular file")
        return json.loads(f.read().decode("utf-8"))

    @staticmethod
    def _extract(tar: tarfile.TarFile, roots: Dict[str, Optional[Path]]) -> None:
        kwargs = _extract_kwargs()
        for member in tar.getmembers():
            if member.name == MANIFEST_NAME:
                continue
            dest, _, rel = member.name.partition("/")
            base = roots.get(dest)
            if base is None or not rel:
                continue
            target = Path(os.path.normpath(base / rel))
            if not _within(base, target):
                raise ValueError(f"refusing to extract outside destination: {member.name}")
            # a symlink extracted earlier must not redirect this member elsewhere
            real_parent = Path(os.path.realpath(target.parent))
            if not _within(Path(os.path.realpath(base)), real_parent):
                raise ValueError(f"refusing to extract through a symlink: {member.name}")
            if member.islnk():
                link_dest, _, link_rel = member.linkname.partition("/")
                if link_dest != dest or not _within(base, Path(os.path.normpath(base / link_rel))):
                    raise ValueError(f"refusing hard link outside destination: {member.name}")
                member.linkname = link_rel
            member.name = rel
            tar.extract(member, path=str(base), **kwargs)

    # -----------------------------------------------------------------
    # save / delete
    # -----------------------------------------------------------------

    def save(
        self,
        key: str,
        paths: Sequence[str],
        *,
        workspace: str | Path = ".",
        home: str | Path | None = None,
    ) -> CacheEntry:
        """
        Archive `paths` under `key`, fully replacing any previous entry.

        Raises CacheUnavailable on any storage error; a failed save leaves
        the previous entry untouched.
        """
        roots = {
            "workspace": Path(workspace).resolve(),
            "home": Path(home).resolve() if home is not None else Path.home().resolve(),
            "root": Path("/"),
        }
        created_at = datetime.now(timezone.utc)
        art = self.artifact_path(key)

        with self._lock_for(key):
            tmp_name: Optional[str] = None
            try:
                files = _resolve_declared(roots, paths)
                manifest = {
                    "key": key,
                    "paths": list(paths),
                    "files": len(files),
                    "created_at": created_at.isoformat(),
                }
                self.root.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=str(self.root), suffix=".tmp")
                with os.fdopen(fd, "wb") as fh, tarfile.open(fileobj=fh, mode="w:gz") as tar:
                    payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
                    info = tarfile.TarInfo(name=MANIFEST_NAME)
                    info.size = len(payload)
                    info.mtime = int(created_at.timestamp())
                    tar.addfile(info, fileobj=io.BytesIO(payload))

                    for dest, base, f in files:
                        rel = f.relative_to(base).as_posix()
                        tar.add(str(f), arcname=f"{dest}/{rel}", recursive=False)

                os.replace(tmp_name, art)
                tmp_name = None
            except (OSError, tarfile.TarError, ValueError) as e:
                raise CacheUnavailable(step=f"save {key}", message=f"cannot write cache artifact: {e}") from e
            finally:
                if tmp_name is not None:
                    Path(tmp_name).unlink(missing_ok=True)

        return CacheEntry(key=key, paths=tuple(paths), artifact=art, created_at=created_at, files=len(files))

    def delete(self, key: str) -> bool:
        """Drop the entry for `key`. Returns False if there was none."""
        art = self.artifact_path(key)
        with self._lock_for(key):
            try:
                art.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise CacheUnavailable(step=f"delete {key}", message=str(e)) from e
        return True
