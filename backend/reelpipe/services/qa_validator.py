"""Final video checks before export.

Platforms reject uploads that are not 1080x1920, exceed 287 MB or contain
long stretches of silence; a video failing any check is not exported.
"""
import logging

from reelpipe.schemas.render import MediaInfo, QaLimits, QaReport

logger = logging.getLogger(__name__)


def evaluate_video(info: MediaInfo, size_bytes: int, limits: QaLimits) -> QaReport:
    """Apply the resolution, file size and silence checks to an inspected video."""
    details = []

    resolution = info.width == limits.width and info.height == limits.height
    if not resolution:
        if info.width is None or info.height is None:
            details.append("No video stream found")
        else:
            details.append(
                f"Resolution {info.width}x{info.height} (expected {limits.width}x{limits.height})"
            )

    max_bytes = int(limits.max_file_size_mb * 1024 * 1024)
    file_size = size_bytes <= max_bytes
    if not file_size:
        details.append(
            f"File size {size_bytes / (1024 * 1024):.1f} MB exceeds {limits.max_file_size_mb:g} MB"
        )

    longest = max(info.silences_sec, default=0.0)
    silence = longest < limits.max_silence_sec
    if not silence:
        details.append(f"Detected {longest:.1f}s of silence (limit {limits.max_silence_sec:g}s)")

    report = QaReport(
        passed=resolution and file_size and silence,
        resolution=resolution,
        file_size=file_size,
        silence=silence,
        width=info.width,
        height=info.height,
        size_bytes=size_bytes,
        longest_silence_sec=round(longest, 3),
        details=details,
    )
    if not report.passed:
        logger.warning(f"Video QA failed: {'; '.join(details)}")
    return report
