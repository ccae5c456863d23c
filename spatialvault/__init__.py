"""Import jobs for raster and point cloud data in a spatial catalogue."""

__version__ = "0.1.0"

__all__ = ["cog", "copc", "errors", "worker"]