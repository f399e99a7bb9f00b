"""ID generation utilities."""

import hashlib
from datetime import datetime
from secrets import token_hex


def new_run_id(now: datetime) -> str:
    """Create run id: YYYYMMDD_HHMMSS_<6chars>."""
    ts = now.strftime("%Y%m%d_%H%M%S")
    suffix = token_hex(3)
    return f"{ts}_{suffix}"


def content_hash(content: str) -> str:
    """Return the cache key of a rendered script."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def project_hash(config_path: str) -> str:
    """Short digest identifying a project by its resolved config path."""
    return hashlib.sha256(config_path.encode("utf-8")).hexdigest()[:8]
