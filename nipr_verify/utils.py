"""
Utility functions for NIPR verification
"""
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional


# Configure logging
def setup_logging(level=logging.INFO):
    """Setup logging configuration"""
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return logging.getLogger(__name__)


logger = setup_logging()


def ensure_directories(extra: Optional[Iterable[str]] = None):
    """Ensure required directories exist"""
    dirs = [
        'data',
        'downloads',
        'logs',
    ]
    if extra:
        dirs.extend(extra)
    for d in dirs:
        Path(d).mkdir(parents=True, exist_ok=True)


def utc_now() -> datetime:
    """Timezone-aware *now* in UTC."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize a datetime for storage.

    Always UTC with a fixed microsecond precision, so stored values sort
    lexically in chronological order.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def short_id(job_id: str) -> str:
    """First 8 characters of an id, for log lines."""
    return job_id[:8]
