# squizzle-sdk/squizzle/version.py
"""
Version management for the Squizzle SDK.

This module holds the package version and the build-environment
fingerprint that is stamped into every manifest.
"""

import platform
import sys
from typing import Dict

# Current SDK version
__version__ = "1.0.0"

# Version of the artifact format written by this engine
ENGINE_VERSION = "2.0.0"


def get_python_version_string() -> str:
    """
    Get current Python version as a string.

    Returns:
        Python version string (e.g., "3.11.4")
    """
    return f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"


def get_platform_info() -> Dict[str, str]:
    """
    Get the build-environment fingerprint recorded in manifests.

    Returns:
        Dictionary with ``os``, ``arch`` and ``python`` keys
    """
    return {
        "os": sys.platform,
        "arch": platform.machine() or "unknown",
        "python": get_python_version_string(),
    }
