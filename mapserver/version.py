"""
Version utilities for the map server
"""
import os
import logging

logger = logging.getLogger(__name__)


def get_version():
    """Get version from the VERSION file at the project root"""
    project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    version_file = os.path.join(project_root, 'VERSION')

    try:
        with open(version_file, 'r') as f:
            version = f.read().strip()
    except OSError as e:
        logger.warning(f"Could not read VERSION file at {version_file}: {e}")
        return "unknown"

    logger.debug(f"Read version {version} from {version_file}")
    return version or "unknown"


_cached_version = None


def get_cached_version():
    """Get cached version or read from file if not cached"""
    global _cached_version
    if _cached_version is None:
        _cached_version = get_version()
    return _cached_version
