"""Version module for reading the application version."""

import os
from importlib.metadata import PackageNotFoundError, version

DISTRIBUTION_NAME = "panopticon-scanner"


def get_version() -> str:
    """Get the application version from package metadata or APP_VERSION.

    Returns:
        str: The version string, or 'unknown' if not found.
    """
    try:
        return version(DISTRIBUTION_NAME)
    except PackageNotFoundError:
        pass

    # Fall back to environment variable (for source checkouts)
    return os.environ.get("APP_VERSION", "unknown")
