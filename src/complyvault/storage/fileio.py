"""
File helpers shared by the ledger, baseline store and publishers.

Writes go through a temp file in the destination directory followed by
os.replace(), so a reader never sees a half-written file. Directory trees
are published the same way: built aside, then swapped into place by rename.
"""

from __future__ import annotations

import hashlib
import json
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any


def compute_file_hash(file_path: Path) -> str:
    """
    Compute SHA-256 hash of a file.

    Returns:
        Hex-encoded SHA-256 hash.
    """
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def dump_json(data: Any) -> str:
    """Deterministic JSON text: sorted keys, two-space indent, trailing newline."""
    return json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False, default=str) + "\n"


def atomic_write_text(path: Path, text: str) -> None:
    """
    Write text to a file atomically using temp file + rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(temp_fd, "w", encoding="utf-8", newline="") as f:
            f.write(text)
        os.replace(temp_path, path)
    except BaseException:
        # Clean up temp file on error
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def atomic_write_json(path: Path, data: Any) -> None:
    atomic_write_text(path, dump_json(data))


def read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def swap_tree(staged: Path, target: Path, scratch_dir: Path) -> Path | None:
    """
    Rename a fully built directory into place, keeping the previous one.

    The previous target (if any) is renamed aside into scratch_dir and
    returned so the caller can either discard it or hand it to
    restore_tree(). If the second rename fails the previous tree is put back
    before the error propagates.

    The two renames are not one atomic step: between them target does not
    exist. Readers that need a single atomic pointer should use a file
    written with atomic_write_text() (the ledger's latest.json).

    Args:
        staged: Completed directory to publish.
        target: Final location.
        scratch_dir: Same-filesystem directory for the retired tree.

    Returns:
        Path of the retired tree, or None if target did not exist.
    """
    target.parent.mkdir(parents=True, exist_ok=True)
    scratch_dir.mkdir(parents=True, exist_ok=True)
    retired: Path | None = None

    if target.exists():
        retired = scratch_dir / f"retired-{target.name}-{uuid.uuid4().hex[:8]}"
        os.rename(target, retired)

    try:
        os.rename(staged, target)
    except OSError:
        if retired is not None:
            os.rename(retired, target)
        raise

    return retired


def restore_tree(target: Path, retired: Path | None, scratch_dir: Path) -> None:
    """
    Undo swap_tree(): drop the tree now at target and put retired back.

    With retired None, target is simply removed.
    """
    if target.exists():
        discarded = scratch_dir / f"discarded-{target.name}-{uuid.uuid4().hex[:8]}"
        os.rename(target, discarded)
        shutil.rmtree(discarded, ignore_errors=True)
    if retired is not None:
        os.rename(retired, target)


def replace_tree(staged: Path, target: Path, scratch_dir: Path) -> None:
    """
    Swap a fully built directory into place and remove the previous one.

    See swap_tree() for the failure behaviour and the window in which
    target is briefly absent.
    """
    retired = swap_tree(staged, target, scratch_dir)
    if retired is not None:
        shutil.rmtree(retired, ignore_errors=True)


def tree_files(root: Path) -> list[str]:
    """All files under root as sorted POSIX relative paths."""
    return sorted(
        p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file()
    )
