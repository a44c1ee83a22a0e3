"""
Snapshot Manager
================
Captures and restores the modified files of a git working tree, keyed by
run id.

Layout:
    <project>/.loopdriver/snapshots/<run_id>/
        .snapshot-meta.json     ← manifest {run_id, created_at, files[]}
        <relative/path/of/each/captured/file>

Rules:
    - The manifest is the sole source of truth for what a snapshot holds.
    - A clean tree still produces a snapshot with an empty file list.
    - Restore copies file by file in place; it is NOT transactional, a
      failure part-way leaves a partially restored tree.
    - Snapshot I/O is sequential and meant for run boundaries only.
"""
import os
import shutil
import logging
import subprocess
from datetime import timedelta
from typing import List, Optional

from pydantic import ValidationError

from loopdriver.core.config import get_project_data_dir
from loopdriver.core.constants import SNAPSHOT_META_FILE, SNAPSHOTS_DIR_NAME
from loopdriver.core.exceptions import InvalidSnapshotError, SnapshotNotFoundError
from loopdriver.models.loop_run import utc_now
from loopdriver.models.snapshot import SnapshotInfo, SnapshotManifest

logger = logging.getLogger(__name__)

_GIT_FILE_QUERIES = [
    ["git", "diff", "--cached", "--name-only", "-z"],
    ["git", "diff", "--name-only", "-z"],
    ["git", "ls-files", "--others", "--exclude-standard", "-z"],
]


# ---------------------------------------------------------------------------
# Change tracking
# ---------------------------------------------------------------------------
def _git_lines(args: List[str], cwd: str) -> List[str]:
    res = subprocess.run(
        args,
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return [p for p in res.stdout.split("\0") if p]


def get_modified_files(project_path: str) -> List[str]:
    """
    Staged, modified and untracked-not-ignored files relative to
    ``project_path``, in first-seen order, limited to files that exist.

    Returns [] when the directory is not a git repository or git fails.
    """
    if not os.path.exists(os.path.join(project_path, ".git")):
        return []

    seen: set[str] = set()
    files: List[str] = []
    try:
        for args in _GIT_FILE_QUERIES:
            for rel in _git_lines(args, project_path):
                if rel not in seen:
                    seen.add(rel)
                    files.append(rel)
    except (subprocess.CalledProcessError, OSError) as e:
        logger.warning("Could not list modified files in %s: %s", project_path, e)
        return []

    # Deleted files show up in `git diff` but have nothing to copy
    return [f for f in files if os.path.isfile(os.path.join(project_path, f))]


def get_snapshots_dir(project_path: str) -> str:
    return os.path.join(get_project_data_dir(project_path), SNAPSHOTS_DIR_NAME)


def _is_within(path: str, root: str) -> bool:
    path = os.path.realpath(path)
    root = os.path.realpath(root)
    return path == root or path.startswith(root + os.sep)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class SnapshotManager:
    """
    Snapshot store for one project root. Outlives individual runs and
    manages any number of snapshot directories independently.
    """

    def __init__(self, project_path: str, snapshots_dir: Optional[str] = None) -> None:
        self.project_path = os.path.abspath(project_path)
        self.snapshots_dir = os.path.abspath(snapshots_dir or get_snapshots_dir(self.project_path))

    def snapshot_path_for(self, run_id: str) -> str:
        if not run_id or run_id in (".", "..") or "/" in run_id or "\\" in run_id:
            raise ValueError(f"Invalid run id for snapshot: {run_id!r}")
        return os.path.join(self.snapshots_dir, run_id)

    def _capturable_files(self) -> List[str]:
        data_dir = get_project_data_dir(self.project_path)
        return [
            rel for rel in get_modified_files(self.project_path)
            if not _is_within(os.path.join(self.project_path, rel), data_dir)
            and not _is_within(os.path.join(self.project_path, rel), self.snapshots_dir)
        ]

    def create(self, run_id: str) -> str:
        """
        Copy every modified/untracked file into a new snapshot for ``run_id``.

        Returns
        -------
        str
            Absolute path of the snapshot directory.
        """
        snapshot_path = self.snapshot_path_for(run_id)
        if os.path.isdir(snapshot_path):
            shutil.rmtree(snapshot_path)
        os.makedirs(snapshot_path)

        files = self._capturable_files()
        for rel in files:
            dest = os.path.join(snapshot_path, rel)
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copy2(os.path.join(self.project_path, rel), dest)

        manifest = SnapshotManifest(run_id=run_id, created_at=utc_now(), files=files)
        with open(os.path.join(snapshot_path, SNAPSHOT_META_FILE), "w", encoding="utf-8") as f:
            f.write(manifest.model_dump_json(indent=2))

        logger.info("Snapshot created | run=%s | files=%d | path=%s",
                    run_id, len(files), snapshot_path)
        return snapshot_path

    @staticmethod
    def read_manifest(snapshot_path: str) -> SnapshotManifest:
        if not os.path.isdir(snapshot_path):
            raise SnapshotNotFoundError(snapshot_path)

        meta_path = os.path.join(snapshot_path, SNAPSHOT_META_FILE)
        if not os.path.isfile(meta_path):
            raise InvalidSnapshotError(snapshot_path)

        try:
            with open(meta_path, "r", encoding="utf-8") as f:
                return SnapshotManifest.model_validate_json(f.read())
        except (ValidationError, ValueError, OSError) as e:
            raise InvalidSnapshotError(snapshot_path, "corrupt metadata") from e

    def restore(self, snapshot_path: str) -> List[str]:
        """
        Copy every manifest-listed file back into the project.

        Files missing from the snapshot are skipped. Entries that would land
        outside the project root are refused and skipped.

        Returns
        -------
        list[str]
            Relative paths actually restored.

        Raises
        ------
        SnapshotNotFoundError, InvalidSnapshotError
        """
        manifest = self.read_manifest(snapshot_path)

        restored: List[str] = []
        for rel in manifest.files:
            src = os.path.join(snapshot_path, rel)
            dest = os.path.join(self.project_path, rel)

            if not _is_within(dest, self.project_path) or not _is_within(src, snapshot_path):
                logger.warning("Refusing to restore path outside project: %s", rel)
                continue
            if not os.path.isfile(src):
                logger.debug("Snapshot file missing, skipping: %s", rel)
                continue

            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copy2(src, dest)
            restored.append(rel)

        logger.info("Snapshot restored | run=%s | files=%d/%d",
                    manifest.run_id, len(restored), len(manifest.files))
        return restored

    def delete(self, snapshot_path: str) -> None:
        """Remove a snapshot directory; missing snapshots are ignored."""
        if os.path.isdir(snapshot_path):
            shutil.rmtree(snapshot_path)
            logger.info("Snapshot deleted: %s", snapshot_path)

    def list(self) -> List[SnapshotInfo]:
        """All valid snapshots, newest first. Corrupt entries are skipped."""
        if not os.path.isdir(self.snapshots_dir):
            return []

        infos: List[SnapshotInfo] = []
        for name in os.listdir(self.snapshots_dir):
            path = os.path.join(self.snapshots_dir, name)
            if not os.path.isdir(path):
                continue
            try:
                manifest = self.read_manifest(path)
            except InvalidSnapshotError:
                logger.debug("Skipping invalid snapshot: %s", path)
                continue
            infos.append(SnapshotInfo(
                run_id=manifest.run_id,
                path=path,
                created_at=manifest.created_at,
                file_count=len(manifest.files),
            ))

        infos.sort(key=lambda i: i.created_at, reverse=True)
        return infos

    def cleanup(self, max_age_ms: int) -> int:
        """Delete snapshots older than ``max_age_ms``; return how many."""
        cutoff = utc_now() - timedelta(milliseconds=max_age_ms)
        deleted = 0
        for info in self.list():
            if info.created_at < cutoff:
                self.delete(info.path)
                deleted += 1
        if deleted:
            logger.info("Snapshot cleanup removed %d snapshot(s)", deleted)
        return deleted


# ---------------------------------------------------------------------------
# Run-keyed helpers
# ---------------------------------------------------------------------------
def create_run_snapshot(project_path: str, run_id: str) -> str:
    return SnapshotManager(project_path).create(run_id)


def restore_run_snapshot(project_path: str, run_id: str) -> List[str]:
    manager = SnapshotManager(project_path)
    return manager.restore(manager.snapshot_path_for(run_id))


def delete_run_snapshot(project_path: str, run_id: str) -> None:
    manager = SnapshotManager(project_path)
    manager.delete(manager.snapshot_path_for(run_id))
