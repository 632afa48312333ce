from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Optional

from backend.app.domain.contracts import MANIFEST_COUNT_ENTITIES, STAGED_FILES
from backend.app.integrations.base import ConnectorExportError, ExportManifest, empty_counts
from backend.app.integrations.utils import utcnow


logger = logging.getLogger(__name__)


def _count_lines(path: Path) -> int:
    with path.open("rb") as handle:
        return sum(1 for line in handle if line.strip())


class LocalExportConnector:
    """Replays a directory of previously staged JSONL files."""

    name = "local"
    env_vars = {"source_dir": "SYNC_LOCAL_SOURCE_DIR"}
    incremental = False

    def export(
        self,
        auth: dict[str, str],
        out_dir: Path,
        cursor_state: Optional[dict[str, str]],
    ) -> ExportManifest:
        _ = cursor_state
        source = Path(auth["source_dir"])
        if not source.is_dir():
            raise ConnectorExportError(f"local source directory not found: {source}")
        out_dir.mkdir(parents=True, exist_ok=True)

        counts = empty_counts()
        copied = 0
        for entity, (filename, _) in STAGED_FILES.items():
            src = source / filename
            dest = out_dir / filename
            if not src.is_file():
                # a file left over from an earlier cycle must not be ingested again
                if dest.is_file() and source.resolve() != out_dir.resolve():
                    dest.unlink()
                continue
            if src.resolve() != dest.resolve():
                shutil.copyfile(src, dest)
            copied += 1
            count_key = MANIFEST_COUNT_ENTITIES.get(entity)
            if count_key:
                counts[count_key] = _count_lines(dest)
        logger.info("local export copied %s staged files from %s to %s", copied, source, out_dir)
        return ExportManifest(exported_at=utcnow(), counts=counts)

    def outbound_client(self, auth: dict[str, str]) -> None:
        _ = auth
        return None
