"""Raw scan output file handling: compression and age-based cleanup."""

import gzip
import logging
import shutil
from datetime import datetime, timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

OUTPUT_PATTERNS = ("scan_*.xml", "scan_*.xml.gz")


def compress_output_file(path: Path) -> Path:
    """Gzip a scan output file in place and return the compressed path."""
    compressed_path = path.with_name(f"{path.name}.gz")
    logger.debug("Compressing scan output file %s", path)

    with open(path, "rb") as source, gzip.open(compressed_path, "wb") as target:
        shutil.copyfileobj(source, target)
    path.unlink()

    logger.debug("Scan output compressed to %s", compressed_path)
    return compressed_path


def clean_output_files(output_dir: Path, retention_days: int, now: datetime | None = None) -> int:
    """
    Delete scan output files older than the retention period.

    Returns:
        Number of files removed
    """
    if retention_days <= 0 or not output_dir.is_dir():
        return 0

    cutoff = (now or datetime.now()) - timedelta(days=retention_days)
    removed = 0
    for pattern in OUTPUT_PATTERNS:
        for path in output_dir.glob(pattern):
            try:
                modified = datetime.fromtimestamp(path.stat().st_mtime)
                if modified < cutoff:
                    path.unlink()
                    removed += 1
            except OSError as exc:
                logger.warning("Failed to remove old scan output %s: %s", path, exc)

    if removed:
        logger.info("Removed %d scan output files older than %d days", removed, retention_days)
    return removed
