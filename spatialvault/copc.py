"""Cloud Optimized Point Cloud detection, conversion and metadata extraction."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from spatialvault.errors import ProcessingError

logger = logging.getLogger(__name__)

_LAS_EXTENSIONS = frozenset({"laz", "las"})


@dataclass(frozen=True)
class PointCloudMetadata:
    """Descriptive metadata of a point cloud file."""

    bounds: tuple[float, float, float, float, float, float]  # minx, miny, minz, maxx, maxy, maxz
    srid: int
    point_count: int
    point_format: int
    dimensions: list[str] = field(default_factory=list)


def is_copc(path: str | os.PathLike[str]) -> bool:
    """Report whether the file is a Cloud Optimized Point Cloud.

    Only the final extension is inspected: ``.copc`` counts as COPC, while
    plain ``.laz``/``.las`` files (including ``.copc.laz``) cannot be
    verified without a point cloud reader and are reported as not COPC.
    """
    extension = Path(path).suffix.lstrip(".")
    if extension == "copc":
        return True
    if extension in _LAS_EXTENSIONS:
        return False
    return False


async def convert_to_copc(
    input_path: str | os.PathLike[str], output_path: str | os.PathLike[str]
) -> None:
    """Convert a point cloud file to a Cloud Optimized Point Cloud.

    No point cloud backend is available, so this always raises
    ProcessingError; callers fall back to the source file.
    """
    logger.info("Converting %s to COPC at %s", Path(input_path), Path(output_path))
    raise ProcessingError("COPC conversion unsupported: no point cloud backend available")


async def extract_pointcloud_metadata(path: str | os.PathLike[str]) -> PointCloudMetadata:
    """Extract bounds, CRS and point information from a point cloud file.

    No point cloud backend is available, so this always raises ProcessingError.
    """
    raise ProcessingError(
        f"Point cloud metadata extraction unsupported for {Path(path)}: "
        "no point cloud backend available"
    )