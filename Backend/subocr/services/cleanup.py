import os
import shutil
import time
import logging
from dataclasses import dataclass

from subocr.core.config import settings

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class JobWorkspace:
    """Local scratch layout for one job. Nothing in here is trusted across steps."""
    root: str

    @classmethod
    def for_job(cls, job_id: str, base_dir: str = None) -> "JobWorkspace":
        return cls(root=os.path.join(base_dir or settings.WORKSPACE_DIR, job_id))

    @property
    def zip_path(self) -> str:
        return os.path.join(self.root, "input.zip")

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.root, "ocr-batch.jsonl")

    @property
    def txt_path(self) -> str:
        return os.path.join(self.root, "ocr.txt")

    @property
    def docx_path(self) -> str:
        return os.path.join(self.root, "ocr.docx")

    @property
    def archive_path(self) -> str:
        return os.path.join(self.root, "images.zip")

    def ensure(self) -> "JobWorkspace":
        os.makedirs(self.root, exist_ok=True)
        return self

def remove_job_workspace(workspace: JobWorkspace) -> bool:
    """
    Best-effort removal of a job's scratch directory. Never raises.
    """
    try:
        shutil.rmtree(workspace.root)
        logger.info(f"Cleanup: Removed workspace {workspace.root}")
        return True
    except FileNotFoundError:
        return True
    except Exception as e:
        logger.warning(f"Failed to remove workspace {workspace.root}: {e}")
        return False

def cleanup_old_files(directory: str, max_age_seconds: int = 86400):
    """
    Deletes job workspaces (and stray files) in the directory that are older than max_age_seconds.

    Args:
        directory: Path to the workspace root to clean.
        max_age_seconds: Max age in seconds (default: 24h).
    """
    if not os.path.exists(directory):
        return

    now = time.time()
    count = 0

    try:
        for name in os.listdir(directory):
            path = os.path.join(directory, name)
            age = now - os.path.getmtime(path)
            if age <= max_age_seconds:
                continue

            try:
                if os.path.isdir(path):
                    shutil.rmtree(path)
                else:
                    os.remove(path)
                count += 1
            except Exception as e:
                logger.warning(f"Failed to delete old workspace entry {name}: {e}")

        if count > 0:
            logger.info(f"Cleanup: Removed {count} old entries (>{max_age_seconds}s) from {directory}.")

    except Exception as e:
        logger.error(f"Cleanup failed for {directory}: {e}")
