"""One sync pass: walk, detect, upload."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cli.change_detector import ChangeDetector, ChangeSet
from cli.config import EngineConfig
from cli.uploader import DualRouteUploader, SyncOutcome
from cli.walker import walk

if TYPE_CHECKING:
    from cli.backup_client import BackupRemote
    from cli.filesystem import EphemeralFilesystem

logger = logging.getLogger(__name__)


class BackupEngine:
    """Composes the walker, change detector and uploader over one filesystem."""

    def __init__(
        self,
        remote: BackupRemote,
        filesystem: EphemeralFilesystem,
        config: EngineConfig | None = None,
    ) -> None:
        self.remote = remote
        self.filesystem = filesystem
        self.config = config or EngineConfig()
        self.detector = ChangeDetector(remote, filesystem)
        self.uploader = DualRouteUploader(remote, filesystem, self.config)

    async def pending_changes(self, project_id: str) -> ChangeSet:
        """Walk the tree and diff it against the remote manifest without uploading."""
        records = await walk(self.filesystem, excluded_dirs=self.config.excluded_dirs)
        return await self.detector.detect(project_id, records)

    async def run_pass(self, project_id: str) -> SyncOutcome:
        """Run one full sync pass. A pass with nothing to do leaves the manifest untouched."""
        changes = await self.pending_changes(project_id)
        if not changes.has_changes:
            logger.debug("Project %s is up to date", project_id)
            return SyncOutcome(last_sync_at=changes.last_sync_at)
        return await self.uploader.upload(project_id, changes)
