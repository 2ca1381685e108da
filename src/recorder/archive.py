"""
Session archiving.

Provides functionality to:
- Package every file produced during a session into one zip archive
- Delete the originals once the archive is complete
- List archives left in a recordings directory
"""

import os
import re
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Sequence, Union

from .logging_utils import get_logger

logger = get_logger(__name__)

ARCHIVE_EXT = "zip"
ARCHIVE_NAME_RE = re.compile(r"^(?P<prefix>.+)_(?P<session_id>[^_]+)_(?P<count>\d+)files\.zip$")


def archive_name(prefix: str, session_id: str, file_count: int) -> str:
    return f"{prefix}_{session_id}_{file_count}files.{ARCHIVE_EXT}"


class SessionArchiver:
    """
    Zip a session's files and remove the originals.

    Usage:
        archiver = SessionArchiver(prefix="TangoData")
        zip_path = archiver.archive("12000000", ["a.vtk", "b.vtk"], "./recordings")
    """

    def __init__(self, prefix: str = "TangoData", compression: int = zipfile.ZIP_DEFLATED):
        """
        Args:
            prefix: First component of every archive name
            compression: zipfile compression constant
        """
        self.prefix = prefix
        self.compression = compression

    def archive(
        self,
        session_id: str,
        file_paths: Sequence[Union[str, os.PathLike]],
        dest_dir: Union[str, os.PathLike],
    ) -> Path:
        """
        Archive the given files, then delete them.

        Args:
            session_id: Session the files belong to
            file_paths: Files to package, in order; may be empty
            dest_dir: Directory receiving the archive

        Returns:
            Path to the archive

        Raises:
            OSError: If the archive itself cannot be written (originals are kept)
        """
        dest = Path(dest_dir)
        dest.mkdir(parents=True, exist_ok=True)

        sources: List[Path] = []
        for p in file_paths:
            path = Path(p)
            if path.is_file():
                sources.append(path)
            else:
                logger.warning("Session %s: file %s missing, not archived", session_id, path)

        zip_path = dest / archive_name(self.prefix, session_id, len(sources))
        tmp_path = zip_path.with_name(zip_path.name + ".part")
        try:
            with zipfile.ZipFile(tmp_path, "w", compression=self.compression) as zf:
                for path in sources:
                    zf.write(path, arcname=path.name)
            os.replace(tmp_path, zip_path)
        except BaseException:
            if tmp_path.exists():
                tmp_path.unlink()
            raise

        logger.info("Session %s archived: %s (%d files)", session_id, zip_path, len(sources))

        # Cleanup failures do not undo a successful archive
        for path in sources:
            try:
                path.unlink()
            except OSError as e:
                logger.warning("File %s not deleted: %s", path, e)

        return zip_path


def list_archives(archive_dir: Union[str, os.PathLike] = "./recordings") -> List[Dict[str, Any]]:
    """
    List session archives with metadata, newest name first.

    Args:
        archive_dir: Directory containing archives

    Returns:
        List of archive info dictionaries
    """
    dir_path = Path(archive_dir)
    if not dir_path.exists():
        return []

    archives = []
    for f in sorted(dir_path.glob(f"*.{ARCHIVE_EXT}"), reverse=True):
        match = ARCHIVE_NAME_RE.match(f.name)
        info: Dict[str, Any] = {
            "path": str(f),
            "name": f.stem,
            "size_bytes": f.stat().st_size,
            "modified": datetime.fromtimestamp(f.stat().st_mtime).isoformat(),
            "session_id": None,
            "declared_files": None,
        }
        if match:
            info["session_id"] = match.group("session_id")
            info["declared_files"] = int(match.group("count"))
        archives.append(info)

    return archives
