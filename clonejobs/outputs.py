from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional, Protocol

from .settings import settings


logger = logging.getLogger(__name__)


class OutputStore(Protocol):
    def output_dir_for(self, job_id: str) -> Path: ...

    def remove(self, location: Optional[str]) -> bool: ...


class LocalOutputStore:
    """Job output kept under <artifacts>/<job_id>/site.

    remove only deletes paths inside the artifacts directory.
    """

    def output_dir_for(self, job_id: str) -> Path:
        path = settings.artifacts_dir_for(job_id) / "site"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def remove(self, location: Optional[str]) -> bool:
        if not location:
            return False
        root = settings.artifacts_root().resolve()
        path = Path(location).resolve()
        if path == root or root not in path.parents:
            logger.warning("refusing to remove output outside artifacts dir: %s", path)
            return False
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
        else:
            return False
        logger.info("removed job output %s", path)
        return True
