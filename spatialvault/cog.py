"""Cloud Optimized GeoTIFF detection, conversion and metadata extraction."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from spatialvault.errors import ProcessingError

logger = logging.getLogger(__name__)

_TIFF_EXTENSIONS = frozenset({"tif", "tiff"})


@dataclass(frozen=True)
class RasterMetadata:
    """Descriptive metadata of a raster file."""

    bounds: tuple[float, float, float, float]  # minx, miny, maxx, maxy
    srid: int
    width: int
    height: int
    bands: int
    dtype: str
    nodata: float | None = None


def is_cog(path: str | os.PathLike[str]) -> bool:
    """Report whether the file is a Cloud Optimized GeoTIFF.

    Without a raster backend the internal layout cannot be verified, so
    no file (TIFF or otherwise) is ever reported as a COG.
    """
    extension = Path(path).suffix.lstrip(".")
    if extension in _TIFF_EXTENSIONS:
        return False
    return False


async def convert_to_cog(
    input_path: str | os.PathLike[str], output_path: str | os.PathLike[str]
) -> None:
    """Convert a raster file to a Cloud Optimized GeoTIFF.

    No raster backend is available, so this always raises ProcessingError;
    callers fall back to the source file.
    """
    logger.info("Converting %s to COG at %s", Path(input_path), Path(output_path))
    raise ProcessingError("COG conversion unsupported: no raster backend available")


async def extract_raster_metadata(path: str | os.PathLike[str]) -> RasterMetadata:
    """Extract bounds, CRS and band information from a raster file.

    No raster backend is available, so this always raises ProcessingError.
    """
    raise ProcessingError(
        f"Raster metadata extraction unsupported for {Path(path)}: no raster backend available"
    )