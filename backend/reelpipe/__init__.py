"""Reel Pipeline - resumable render orchestrator for short-form vertical video.

This module provides startup validation functions to ensure required
dependencies are available before a non dry-run render begins.
Call validate_dependencies() during application startup.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)


def validate_dependencies(ffmpeg_binary: str = "ffmpeg", ffprobe_binary: str = "ffprobe") -> None:
    """Validate required system dependencies are available.

    This function should be called before starting a real render to fail fast
    with clear installation instructions if ffmpeg/ffprobe are missing.
    Dry-run renders do not need it.

    Raises:
        RuntimeError: If ffmpeg or ffprobe is not found or not functional.
    """
    for binary in (ffmpeg_binary, ffprobe_binary):
        try:
            result = subprocess.run(
                [binary, '-version'],
                capture_output=True,
                check=True,
                text=True
            )
            version_line = result.stdout.split('\n')[0]
            logger.info(f"{binary} validated: {version_line}")
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(
                f"{binary} not found on PATH. Install ffmpeg to render videos.\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg\n"
                "Windows: https://ffmpeg.org/download.html"
            ) from e
