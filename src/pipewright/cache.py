# cache.py
from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import tarfile
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

from .model import CacheSpec

# ---------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------
#   root/
#     <quoted key>/
#       <time_ns>-<uuid>.tar.gz     one file per put, never rewritten
#
# Entries are append-only. The newest entry of a key is the live one, so
# two writers racing on the same key resolve to last-writer-wins.
#
# Cache keys:
#   key = "<spec.key>-<sha256 over spec.files>"   (just spec.key if no files)
# ---------------------------------------------------------------------

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".tar.gz"
_WORKSPACE_ARC = "workspace"
_ABSOLUTE_ARC = "absolute"


@dataclass(frozen=True)
class CacheHit:
    key: str          # key that was asked for
    matched_key: str  # key the entry is stored under
    path: Path
    payload: bytes

    @property
    def exact(self) -> bool:
        return self.key == self.matched_key

    @property
    def reason(self) -> str:
        if self.exact:
            return f"hit ({self.key})"
        return f"partial hit via restore key ({self.matched_key})"


def _sha256_str(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "**/Cargo.lock"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # de-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def hash_files(root: str | Path, patterns: Sequence[str]) -> str:
    """
    Hash the matched files deterministically (relative path + content).
    Directories contribute every file under them.
    """
    root = Path(root).resolve()
    fps: List[Tuple[str, str]] = []
    for p in _resolve_globs(root, patterns):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            fps.append((_relpath(f, root), _hash_file_contents(f)))
    fps.sort()
    return _sha256_str(_json_dumps_stable(fps))


def compute_cache_key(spec: CacheSpec, root: str | Path = ".") -> str:
    if not spec.files:
        return spec.key
    return f"{spec.key}-{hash_files(root, spec.files)}"


# ---------------------------------------------------------------------
# Payload packing
# ---------------------------------------------------------------------

def _arc_base(entry: str, root: Path) -> Tuple[Path, str]:
    """Map a declared cache path to (filesystem base, archive prefix)."""
    expanded = Path(os.path.expanduser(entry))
    if expanded.is_absolute():
        return Path(expanded.anchor), _ABSOLUTE_ARC
    return root, _WORKSPACE_ARC


def pack_paths(root: str | Path, paths: Sequence[str]) -> bytes:
    """Archive the declared paths into a tar.gz payload. Missing paths are skipped."""
    root = Path(root).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            base, prefix = _arc_base(entry, root)
            src = (root / os.path.expanduser(entry)).resolve()
            if not src.exists():
                logger.debug("cache path %s does not exist, skipping", src)
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                rel = _relpath(f, base)
                tar.add(str(f), arcname=f"{prefix}/{rel}", recursive=False)
    return buf.getvalue()


def unpack_payload(payload: bytes, root: str | Path) -> List[Path]:
    """
    Extract a payload produced by pack_paths.
    Workspace members land under root; absolute members at their original path.
    Returns the written files.
    """
    root = Path(root).resolve()
    written: List[Path] = []
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            prefix, _, rel = member.name.partition("/")
            if prefix == _WORKSPACE_ARC:
                base = root
            elif prefix == _ABSOLUTE_ARC:
                base = Path(root.anchor)
            else:
                continue
            dest = (base / rel).resolve()
            if dest != base and base not in dest.parents:
                raise ValueError(f"refusing to extract {member.name!r} outside {base}")
            dest.parent.mkdir(parents=True, exist_ok=True)
            src = tar.extractfile(member)
            if src is None:
                continue
            with src, dest.open("wb") as out:
                out.write(src.read())
            os.chmod(dest, member.mode & 0o777 or 0o644)
            written.append(dest)
    return written


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CacheStore:
    """
    File-based, append-only cache store.

    get/put are safe to call from concurrent jobs: each key has its own lock
    and every put writes a new entry file before an atomic rename.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _key_dir(self, key: str) -> Path:
        if not key:
            raise ValueError("cache key must not be empty")
        return self.root / quote(key, safe="")

    def _entries(self, key: str) -> List[Path]:
        d = self._key_dir(key)
        if not d.is_dir():
            return []
        return sorted(d.glob(f"*{ENTRY_SUFFIX}"), key=lambda p: p.name)

    def keys(self) -> List[str]:
        return sorted(unquote(d.name) for d in self.root.iterdir() if d.is_dir())

    def _newest(self, key: str) -> Optional[Path]:
        entries = self._entries(key)
        return entries[-1] if entries else None

    def get(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheHit]:
        """
        Exact key first, then each restore-key prefix in order.
        For a prefix, the most recently written entry among matching keys wins.
        Returns None on miss.
        """
        with self._lock(key):
            newest = self._newest(key)
            if newest is not None:
                return CacheHit(key=key, matched_key=key, path=newest, payload=newest.read_bytes())

        all_keys = self.keys()
        for prefix in restore_keys:
            best: Tuple[str, Path] | None = None
            for candidate in all_keys:
                if not candidate.startswith(prefix):
                    continue
                with self._lock(candidate):
                    entry = self._newest(candidate)
                if entry is not None and (best is None or entry.name > best[1].name):
                    best = (candidate, entry)
            if best is not None:
                matched, entry = best
                with self._lock(matched):
                    payload = entry.read_bytes()
                return CacheHit(key=key, matched_key=matched, path=entry, payload=payload)
        return None

    def put(self, key: str, payload: bytes) -> Path:
        """Append a new entry for key. Never fails because the key exists."""
        d = self._key_dir(key)
        with self._lock(key):
            d.mkdir(parents=True, exist_ok=True)
            name = f"{time.time_ns():020d}-{uuid.uuid4().hex[:8]}{ENTRY_SUFFIX}"
            final = d / name
            tmp = d / f".{name}.tmp"
            try:
                tmp.write_bytes(payload)
                tmp.replace(final)
            finally:
                if tmp.exists():
                    tmp.unlink(missing_ok=True)
        logger.debug("cache put %s -> %s (%d bytes)", key, final.name, len(payload))
        return final

    def prune(self, key: str, keep: int = 3) -> int:
        """Keep only the newest N entries for a key. Returns how many were removed."""
        with self._lock(key):
            entries = self._entries(key)
            stale = entries[:-keep] if keep > 0 else entries
            for p in stale:
                p.unlink(missing_ok=True)
        return len(stale)
