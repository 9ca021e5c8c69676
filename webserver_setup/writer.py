# ABOUTME: Writes rendered artifacts to disk with per-run backups and atomic replacement
# ABOUTME: Applies file modes and service-account ownership and can roll a write back

import os
import grp
import pwd
import shutil
import logging
import tempfile
from pathlib import Path
from typing import Dict, Optional

from webserver_setup.errors import WriteError
from webserver_setup.models import AppConfig, Artifact, WriteOutcome
from webserver_setup.utils import run_timestamp

logger = logging.getLogger(__name__)


class ArtifactWriter:
    """Backup-before-overwrite file writer for one run"""

    def __init__(self, config: AppConfig, run_id: Optional[str] = None):
        self.config = config
        self.run_id = run_id or run_timestamp()
        self.backup_root = Path(config.backup_dir) / self.run_id
        self._backups: Dict[str, str] = {}

    def backup_path_for(self, path: str) -> Path:
        """Backups mirror the absolute path under the run's backup directory"""
        return self.backup_root / path.lstrip("/")

    def _backup(self, path: str) -> str:
        # The first backup of a path in a run holds the pre-run content
        if path in self._backups:
            return self._backups[path]
        target = self.backup_path_for(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(path, target)
        self._backups[path] = str(target)
        logger.info(f"Backed up {path} to {target}")
        return str(target)

    def _owner_ids(self):
        try:
            uid = pwd.getpwnam(self.config.service_user).pw_uid
            gid = grp.getgrnam(self.config.service_group).gr_gid
        except KeyError as e:
            raise WriteError(self.config.service_user, f"Unknown service account: {e}")
        return uid, gid

    def _replace(self, artifact: Artifact, content: str) -> None:
        target = Path(artifact.path)
        target.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "w") as tmp:
                tmp.write(content)
            os.chmod(tmp_path, artifact.mode)
            if artifact.service_owned and self.config.manage_ownership:
                uid, gid = self._owner_ids()
                os.chown(tmp_path, uid, gid)
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def write(self, artifact: Artifact) -> WriteOutcome:
        """Write one artifact

        Raises:
            WriteError: when the file cannot be backed up or written.
        """
        path = artifact.path
        try:
            exists = os.path.exists(path)

            if exists and artifact.create_only:
                logger.info(f"Keeping existing {path}")
                return WriteOutcome(artifact=artifact, changed=False, skipped=True)

            previous_content = None
            backup_path = None
            if exists:
                with open(path, "r") as f:
                    previous_content = f.read()
                if previous_content == artifact.content:
                    # Content is current; still enforce the mode
                    os.chmod(path, artifact.mode)
                    logger.info(f"{path} is already up to date")
                    return WriteOutcome(artifact=artifact, previous_content=previous_content, changed=False)
                backup_path = self._backup(path)

            self._replace(artifact, artifact.content)
            logger.info(f"Wrote {artifact.kind.value} to {path}")
            return WriteOutcome(artifact=artifact, backup_path=backup_path,
                                previous_content=previous_content, changed=True)
        except OSError as e:
            logger.error(f"Failed to write {path}: {e}")
            raise WriteError(path, str(e))

    def rollback(self, outcome: WriteOutcome) -> None:
        """Put back what was on disk before ``outcome``'s write"""
        if not outcome.changed:
            return
        path = outcome.artifact.path
        try:
            if outcome.previous_content is None:
                if os.path.exists(path):
                    os.unlink(path)
                logger.warning(f"Removed newly written {path}")
            else:
                self._replace(outcome.artifact, outcome.previous_content)
                logger.warning(f"Restored previous content of {path}")
        except OSError as e:
            logger.error(f"Failed to roll back {path}: {e}")
            raise WriteError(path, f"rollback failed: {e}")
