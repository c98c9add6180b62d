# fingerprint.py
from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

# ---------------------------------------------------------------------
# Content fingerprint
# ---------------------------------------------------------------------
#   fingerprint = hash(
#       ref,
#       (relpath, sha256, size) of every file matched by the pipeline's
#       path globs, sorted by relpath,
#       globs that matched nothing
#   )
#
# Only files under the declared paths take part, so edits elsewhere in the
# repo leave the fingerprint (and skip eligibility) unchanged.
# ---------------------------------------------------------------------

FINGERPRINT_VERSION = 1

DEFAULT_EXCLUDES = [
    ".git/**",
    ".cimatrix/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: Sequence[str]) -> bool:
    rel_path = Path(rel)
    for g in globs:
        # Path.match anchors from the right; "**" prefixes need the bare form too
        if rel_path.match(g) or (g.startswith("**/") and rel_path.match(g[3:])):
            return True
        if g.endswith("/**") and (rel == g[:-3] or rel.startswith(g[:-2])):
            return True
    return False


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def resolve_globs(repo_root: Path, patterns: Sequence[str]) -> Tuple[List[Path], List[str]]:
    """
    Expand path patterns into concrete paths.

    Supports:
      - file path: "Cargo.toml"
      - dir path:  "src/"
      - glob:      "src/**", "tests/**/*.rs"

    Returns (paths, patterns_that_matched_nothing).
    """
    out: List[Path] = []
    unmatched: List[str] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = repo_root / pat
        if p.exists():
            out.append(p)
            continue

        matches = sorted(m for m in repo_root.glob(pat) if m.exists())
        if not matches:
            unmatched.append(pat)
        out.extend(matches)

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq, unmatched


def compute_fingerprint(
    repo_root: str | Path = ".",
    paths: Sequence[str] = (".",),
    *,
    ref: Optional[str] = None,
    excludes: Optional[Sequence[str]] = None,
) -> Tuple[str, Dict]:
    """
    Returns (fingerprint, manifest) where manifest lists what was hashed.
    """
    root = Path(repo_root).resolve()
    exclude_globs = list(DEFAULT_EXCLUDES)
    if excludes:
        exclude_globs.extend(excludes)

    resolved, unmatched = resolve_globs(root, list(paths) or ["."])

    files: Dict[str, Tuple[str, int]] = {}
    for p in resolved:
        candidates = [p] if p.is_file() else list(_iter_files_under(p))
        for f in candidates:
            rel = _relpath(f, root)
            if rel in files or _matches_any_glob(rel, exclude_globs):
                continue
            files[rel] = (_hash_file_contents(f), f.stat().st_size)

    file_fps = [[rel, digest, size] for rel, (digest, size) in sorted(files.items())]
    payload = {
        "v": FINGERPRINT_VERSION,
        "ref": ref,
        "files": file_fps,
        "unmatched": sorted(unmatched),
    }
    fingerprint = _sha256_str(_json_dumps_stable(payload))
    manifest = {
        "fingerprint": fingerprint,
        "ref": ref,
        "file_count": len(file_fps),
        "unmatched": sorted(unmatched),
        "excludes": exclude_globs,
    }
    return fingerprint, manifest
