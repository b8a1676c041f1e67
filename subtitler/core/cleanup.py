"""
Cleanup: per-job scratch directories that are removed on every exit path.
"""

import shutil
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def cleanup_job_artifacts(job_workspace: Path, keep_debug: bool = False):
    """
    Delete a job's scratch workspace.

    If keep_debug is True the workspace is left in place for inspection,
    except for bulky media copies (source/, chunks/, ocr_frames/).
    """
    if not job_workspace.exists():
        return

    if not keep_debug:
        try:
            shutil.rmtree(job_workspace)
            logger.debug("Removed workspace: %s", job_workspace)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", job_workspace, e)
        return

    for dirname in ('source', 'chunks', 'ocr_frames'):
        dir_path = job_workspace / dirname
        if dir_path.exists():
            try:
                shutil.rmtree(dir_path)
                logger.debug("Deleted: %s", dir_path)
            except OSError as e:
                logger.warning("Failed to delete %s: %s", dir_path, e)


class ScratchDirectory:
    """
    Context manager owning ``<root>/<job_id>/<name>``.

        with ScratchDirectory(root, job_id, 'start') as scratch:
            path = scratch / 'source.mp4'
    """

    def __init__(self, root: Path, job_id: str, name: str | None = None,
                 keep_debug: bool = False):
        self.path = Path(root) / job_id
        if name:
            self.path = self.path / name
        self.keep_debug = keep_debug

    def __enter__(self) -> Path:
        self.path.mkdir(parents=True, exist_ok=True)
        return self.path

    def __exit__(self, exc_type, exc, tb):
        cleanup_job_artifacts(self.path, keep_debug=self.keep_debug)
        return False
