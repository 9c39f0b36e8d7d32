"""Content-addressed snapshots of the working tree, and revert of applied changes.

Snapshots are git tree objects written into a private object store
(``<cwd>/.skema/snapshots.git``) through a private index file, so the user's
own repository (if any) is never touched and the project does not need to be a
git repository at all. Identical content shares storage; a tree object is
immutable once written.
"""

from __future__ import annotations

import asyncio
import os
import stat
import uuid
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field

from skema_daemon.core_models import ChangeRecord
from skema_daemon.exceptions import SnapshotError
from skema_daemon.metrics import REVERTS

log = structlog.get_logger(__name__)

# Paths never captured, on top of the project's own .gitignore files.
DEFAULT_EXCLUDES = ("node_modules/", ".next/", "__pycache__/")

_MODE_SYMLINK = "120000"
_MODE_EXECUTABLE = "100755"


class RevertResult(BaseModel):
    status: Literal["reverted", "no_changes", "conflict"]
    annotation_id: str
    paths: List[str] = Field(default_factory=list)
    blocking: List[str] = Field(default_factory=list, description="Annotations whose later changes block the revert")
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status != "conflict"


class SnapshotManager:
    """Creates snapshots before agent runs and reverts the changes they bracket.

    Callers must hold the daemon's working-tree lock around ``capture`` /
    ``commit`` / ``revert`` / ``rollback``; this class only serialises its own
    use of the private index.
    """

    def __init__(self, work_tree: str, store_dir: str = ".skema", excludes: Sequence[str] = DEFAULT_EXCLUDES):
        self.work_tree = Path(work_tree).resolve()
        self.store_dir = store_dir
        self.git_dir = self.work_tree / store_dir / "snapshots.git"
        self.index_file = self.git_dir / "skema-index"
        self.excludes = tuple(excludes)
        self._changes: Dict[str, ChangeRecord] = {}
        self._seq = 0
        self._index_lock = asyncio.Lock()
        self._initialised = False

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def capture(self) -> str:
        """Write the current working tree as an immutable tree object and return its id."""
        await self._ensure_store()
        async with self._index_lock:
            await self._git("add", "--all", "--", ".")
            tree = (await self._git("write-tree")).decode().strip()
        log.debug("Snapshot captured", tree=tree[:12])
        return tree

    async def commit(self, annotation_id: str, pre_snapshot: str) -> ChangeRecord:
        """Record the change made since *pre_snapshot* as belonging to *annotation_id*."""
        post_snapshot = await self.capture()
        paths = await self.diff(pre_snapshot, post_snapshot)
        self._seq += 1
        record = ChangeRecord(
            id=f"chg-{uuid.uuid4().hex[:12]}",
            annotation_id=annotation_id,
            seq=self._seq,
            pre_snapshot=pre_snapshot,
            post_snapshot=post_snapshot,
            touched_paths=paths,
        )
        self._changes[record.id] = record
        log.info(
            "Change recorded",
            change_id=record.id,
            annotation_id=annotation_id,
            paths=len(paths),
            pre=pre_snapshot[:7],
            post=post_snapshot[:7],
        )
        return record

    async def diff(self, old_tree: str, new_tree: str) -> List[str]:
        if old_tree == new_tree:
            return []
        out = await self._git("diff-tree", "-r", "-z", "--name-only", "--no-renames", old_tree, new_tree)
        return [p for p in out.decode("utf-8", errors="surrogateescape").split("\0") if p]

    async def revert(self, annotation_id: str) -> RevertResult:
        """Restore the paths changed for *annotation_id* to their state before its earliest unreverted change.

        Returns ``conflict`` without touching anything if a later, unreverted
        change of another annotation overlaps those paths.
        """
        mine = self.changes_for(annotation_id)
        if not mine:
            REVERTS.labels(result="no_changes").inc()
            return RevertResult(status="no_changes", annotation_id=annotation_id, message="No changes to revert")

        blocked = self.conflicts(annotation_id)
        if blocked is not None:
            REVERTS.labels(result="conflict").inc()
            log.warning(
                "Revert blocked by later changes",
                annotation_id=annotation_id,
                paths=blocked.paths,
                blocking=blocked.blocking,
            )
            return blocked

        earliest = mine[0]
        paths = sorted({p for change in mine for p in change.touched_paths})
        if paths:
            await self._restore(earliest.pre_snapshot, paths)
        for change in mine:
            self._changes[change.id] = change.model_copy(update={"reverted": True})

        if not paths:
            REVERTS.labels(result="no_changes").inc()
            return RevertResult(status="no_changes", annotation_id=annotation_id, message="No changes to revert")
        REVERTS.labels(result="reverted").inc()
        log.info("Annotation reverted", annotation_id=annotation_id, paths=len(paths))
        return RevertResult(
            status="reverted",
            annotation_id=annotation_id,
            paths=paths,
            message=f"Reverted {len(paths)} file(s)",
        )

    async def rollback(self, pre_snapshot: str) -> List[str]:
        """Undo everything changed since *pre_snapshot* (used for failed runs). No change record is kept."""
        current = await self.capture()
        paths = await self.diff(pre_snapshot, current)
        if paths:
            await self._restore(pre_snapshot, paths)
            log.info("Working tree rolled back", paths=len(paths), snapshot=pre_snapshot[:7])
        return paths

    def changes_for(self, annotation_id: str, include_reverted: bool = False) -> List[ChangeRecord]:
        return sorted(
            (c for c in self._changes.values()
             if c.annotation_id == annotation_id and (include_reverted or not c.reverted)),
            key=lambda c: c.seq,
        )

    def conflicts(self, annotation_id: str) -> Optional[RevertResult]:
        """Return the ``conflict`` result a revert would produce right now, or ``None``. Changes nothing."""
        mine = self.changes_for(annotation_id)
        if not mine:
            return None
        paths = sorted({p for change in mine for p in change.touched_paths})
        overlapping, blocking = self._later_overlaps(annotation_id, mine[0].seq, paths)
        if not blocking:
            return None
        return RevertResult(
            status="conflict",
            annotation_id=annotation_id,
            paths=overlapping,
            blocking=blocking,
            message=f"{len(overlapping)} file(s) were changed later by {', '.join(blocking)}",
        )

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _later_overlaps(self, annotation_id: str, after_seq: int, paths: List[str]) -> Tuple[List[str], List[str]]:
        wanted = set(paths)
        overlapping: set[str] = set()
        blocking: List[str] = []
        for change in sorted(self._changes.values(), key=lambda c: c.seq):
            if change.reverted or change.annotation_id == annotation_id or change.seq <= after_seq:
                continue
            hit = wanted.intersection(change.touched_paths)
            if hit:
                overlapping.update(hit)
                if change.annotation_id not in blocking:
                    blocking.append(change.annotation_id)
        return sorted(overlapping), blocking

    async def _restore(self, tree: str, paths: List[str]) -> None:
        entries: Dict[str, Tuple[str, str]] = {}
        listing = await self._git("ls-tree", "-r", "-z", "--full-tree", tree)
        wanted = set(paths)
        for item in listing.decode("utf-8", errors="surrogateescape").split("\0"):
            if not item:
                continue
            meta, _, path = item.partition("\t")
            if path in wanted:
                mode, _kind, sha = meta.split(" ")
                entries[path] = (mode, sha)

        for path in paths:
            target = self.work_tree / path
            if path in entries:
                mode, sha = entries[path]
                data = await self._git("cat-file", "blob", sha)
                _write_entry(target, mode, data)
            elif target.is_symlink() or target.exists():
                if target.is_dir() and not target.is_symlink():
                    continue
                target.unlink()
                _prune_empty_dirs(target.parent, self.work_tree)

    async def _ensure_store(self) -> None:
        if self._initialised:
            return
        if not (self.git_dir / "HEAD").exists():
            self.git_dir.mkdir(parents=True, exist_ok=True)
            await self._git("init", "--quiet")
            log.info("Snapshot store initialised", git_dir=str(self.git_dir))
        for key, value in (("core.bare", "false"), ("core.autocrlf", "false"), ("gc.auto", "0")):
            await self._git("config", key, value)
        info = self.git_dir / "info"
        info.mkdir(exist_ok=True)
        excludes = [f"/{self.store_dir}/", *self.excludes]
        (info / "exclude").write_text("\n".join(excludes) + "\n", encoding="utf-8")
        self._initialised = True

    async def _git(self, *args: str, check: bool = True) -> bytes:
        env = {
            **os.environ,
            "GIT_DIR": str(self.git_dir),
            "GIT_WORK_TREE": str(self.work_tree),
            "GIT_INDEX_FILE": str(self.index_file),
        }
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=str(self.work_tree),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        out, err = await proc.communicate()
        if check and proc.returncode != 0:
            raise SnapshotError(
                f"git {args[0]} failed: {err.decode(errors='replace').strip()}",
                returncode=proc.returncode,
            )
        return out


def _write_entry(target: Path, mode: str, data: bytes) -> None:
    if target.is_dir() and not target.is_symlink():
        raise SnapshotError(f"Cannot restore file over directory: {target}")
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.is_symlink() or (mode == _MODE_SYMLINK and target.exists()):
        target.unlink()
    if mode == _MODE_SYMLINK:
        os.symlink(data.decode("utf-8", errors="surrogateescape"), target)
        return
    target.write_bytes(data)
    current = target.stat().st_mode
    exec_bits = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
    if mode == _MODE_EXECUTABLE:
        target.chmod(current | exec_bits)
    else:
        target.chmod(current & ~exec_bits)


def _prune_empty_dirs(directory: Path, root: Path) -> None:
    while directory != root and root in directory.parents:
        try:
            directory.rmdir()
        except OSError:
            return
        directory = directory.parent

