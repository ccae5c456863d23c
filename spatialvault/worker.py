"""Background worker that claims queued import jobs and runs them."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import math
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

import httpx

from spatialvault import cog, copc
from spatialvault.errors import BadRequestError, ProcessingError, SpatialVaultError

logger = logging.getLogger(__name__)

DEFAULT_SRID = 4326
GLOBAL_EXTENT_WKT = "POLYGON((-180 -90, 180 -90, 180 90, -180 90, -180 -90))"
POLL_INTERVAL_SECONDS = 5.0

_MEDIA_TYPE_EXTENSIONS = {
    "image/tiff": "tif",
    "image/geotiff": "tif",
    "application/vnd.laszip": "laz",
    "application/vnd.laszip+copc": "laz",
    "application/vnd.las": "las",
}

_GEOTIFF_MEDIA_TYPE = "image/tiff; application=geotiff"
_COG_MEDIA_TYPE = "image/tiff; application=geotiff; profile=cloud-optimized"
_COPC_MEDIA_TYPE = "application/vnd.laszip+copc"


# --------------------------------------------------------------------------
# Input values
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class InlineValue:
    """Base64-encoded file content supplied directly with the job."""

    value: str
    media_type: Optional[str] = None


@dataclass(frozen=True)
class ReferenceValue:
    """A file supplied by reference (``s3://``, ``http://`` or ``https://``)."""

    href: str


InputValue = Union[InlineValue, ReferenceValue]


@dataclass(frozen=True)
class ImportRasterInputs:
    """Inputs of the ``import-raster`` process."""

    collection: str
    data: InputValue
    skip_if_cog: bool = True
    datetime: Optional[str] = None
    properties: Optional[dict[str, Any]] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class ImportPointCloudInputs:
    """Inputs of the ``import-pointcloud`` process."""

    collection: str
    data: InputValue
    skip_if_copc: bool = True
    datetime: Optional[str] = None
    properties: Optional[dict[str, Any]] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class ClaimedJob:
    """A job that has been moved from ``accepted`` to ``running``."""

    job_id: uuid.UUID
    process_id: str
    owner: str
    inputs: Mapping[str, Any] = field(default_factory=dict)


def _pick(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data:
            return data[name]
    return None


def _optional_str(data: Mapping[str, Any], field_name: str, *names: str) -> Optional[str]:
    value = _pick(data, *names)
    if value is None:
        return None
    if not isinstance(value, str):
        raise BadRequestError(f"Invalid inputs: '{field_name}' must be a string")
    return value


def parse_input_value(data: Any) -> InputValue:
    """Build an inline or reference input value from its JSON form."""
    if isinstance(data, (InlineValue, ReferenceValue)):
        return data
    if not isinstance(data, Mapping):
        raise BadRequestError("Invalid input value: expected an object")
    href = data.get("href")
    if href is not None:
        if not isinstance(href, str):
            raise BadRequestError("Invalid input value: 'href' must be a string")
        return ReferenceValue(href=href)
    value = data.get("value")
    if value is not None:
        if not isinstance(value, str):
            raise BadRequestError("Invalid input value: 'value' must be a string")
        media_type = _optional_str(data, "mediaType", "mediaType", "media_type")
        return InlineValue(value=value, media_type=media_type)
    raise BadRequestError("Invalid input value: expected 'href' or 'value'")


def _parse_common(data: Any, skip_field: str, skip_alias: str) -> dict[str, Any]:
    if not isinstance(data, Mapping):
        raise BadRequestError("Invalid inputs: expected an object")
    collection = data.get("collection")
    if not isinstance(collection, str):
        raise BadRequestError("Invalid inputs: 'collection' is required and must be a string")
    if "data" not in data:
        raise BadRequestError("Invalid inputs: 'data' is required")
    skip = _pick(data, skip_field, skip_alias)
    if skip is None:
        skip = True
    elif not isinstance(skip, bool):
        raise BadRequestError(f"Invalid inputs: '{skip_field}' must be a boolean")
    properties = data.get("properties")
    if properties is not None and not isinstance(properties, Mapping):
        raise BadRequestError("Invalid inputs: 'properties' must be an object")
    return {
        "collection": collection,
        "data": parse_input_value(data["data"]),
        skip_field: skip,
        "datetime": _optional_str(data, "datetime", "datetime"),
        "properties": dict(properties) if properties is not None else None,
        "title": _optional_str(data, "title", "title"),
    }


def parse_import_raster_inputs(data: Any) -> ImportRasterInputs:
    """Validate the JSON inputs of an ``import-raster`` job."""
    if isinstance(data, ImportRasterInputs):
        return data
    return ImportRasterInputs(**_parse_common(data, "skip_if_cog", "skipIfCog"))


def parse_import_pointcloud_inputs(data: Any) -> ImportPointCloudInputs:
    """Validate the JSON inputs of an ``import-pointcloud`` job."""
    if isinstance(data, ImportPointCloudInputs):
        return data
    return ImportPointCloudInputs(**_parse_common(data, "skip_if_copc", "skipIfCopc"))


# --------------------------------------------------------------------------
# Small helpers
# --------------------------------------------------------------------------


def extension_for_media_type(media_type: Optional[str]) -> Optional[str]:
    """File extension implied by a media type, or None when unknown."""
    if media_type is None:
        return None
    return _MEDIA_TYPE_EXTENSIONS.get(media_type)


def safe_extension_from_url(url: str) -> str:
    """Extension of the URL's last path segment, or ``bin`` if unsafe.

    Only ASCII letters and digits, at most ten characters, are accepted so
    that the extension cannot be used for path traversal.
    """
    extension = url.rsplit("/", 1)[-1].rsplit(".", 1)[-1]
    if len(extension) <= 10 and all(c.isascii() and c.isalnum() for c in extension):
        return extension
    return "bin"


def s3_key_from_url(url: str) -> str:
    """Object key of an ``s3://bucket/key`` URL."""
    path = url.removeprefix("s3://") if hasattr(str, "removeprefix") else url[5:]
    _, sep, key = path.partition("/")
    return key if sep else path


def _format_coordinate(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    if value == 0:
        return "-0" if math.copysign(1.0, value) < 0 else "0"
    if value.is_integer():
        return str(int(value))
    return format(Decimal(repr(value)), "f")


def bounds_to_wkt(minx: float, miny: float, maxx: float, maxy: float) -> str:
    """Closed WKT polygon covering an axis-aligned bounding box."""
    x0, y0, x1, y1 = (_format_coordinate(v) for v in (minx, miny, maxx, maxy))
    return f"POLYGON(({x0} {y0}, {x1} {y0}, {x1} {y1}, {x0} {y1}, {x0} {y0}))"


def _parse_rfc3339(text: str) -> Optional[datetime]:
    candidate = text
    if candidate[-1:] in ("Z", "z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except OSError:
        pass


# --------------------------------------------------------------------------
# Collaborators
# --------------------------------------------------------------------------


class JobQueue(Protocol):
    async def claim_next_job(self) -> Optional[ClaimedJob]:
        """Atomically move the oldest accepted job to running and return it."""


class ObjectStorage(Protocol):
    async def put(self, key: str, data: bytes) -> None: ...

    async def get(self, key: str) -> bytes: ...

    def s3_uri(self, key: str) -> str: ...


class ProcessService(Protocol):
    async def set_job_outputs(self, job_id: uuid.UUID, outputs: Mapping[str, Any]) -> None: ...

    async def update_job_status(
        self,
        job_id: uuid.UUID,
        status: str,
        message: Optional[str],
        progress: Optional[int],
    ) -> None: ...


class ItemService(Protocol):
    async def create_item(
        self,
        *,
        collection_id: Any,
        geometry_wkt: str,
        srid: int,
        datetime: Optional[datetime],
        properties: Optional[Mapping[str, Any]],
    ) -> Any: ...

    async def create_asset(
        self,
        *,
        item_id: Any,
        key: str,
        href: str,
        media_type: Optional[str],
        title: Optional[str],
        description: Optional[str],
        roles: Optional[list[str]],
        file_size: Optional[int],
        extra_fields: Optional[Mapping[str, Any]],
    ) -> Any: ...


class CollectionService(Protocol):
    """Collections returned expose ``id``, ``table_name`` and ``collection_type``."""

    async def get_collection(self, owner: str, name: str) -> Any: ...

    async def create_collection(
        self,
        *,
        owner: str,
        canonical_name: str,
        created_by: str,
        title: str,
        description: Optional[str],
        collection_type: str,
        srid: int,
    ) -> Any: ...


# --------------------------------------------------------------------------
# Worker
# --------------------------------------------------------------------------


class JobWorker:
    """Polls the job queue and runs raster and point cloud imports."""

    def __init__(
        self,
        jobs: JobQueue,
        storage: ObjectStorage,
        process_service: ProcessService,
        item_service: ItemService,
        collection_service: CollectionService,
        temp_dir: Optional[Path] = None,
    ) -> None:
        self._jobs = jobs
        self._storage = storage
        self._process_service = process_service
        self._item_service = item_service
        self._collection_service = collection_service
        self.temp_dir = (
            Path(temp_dir) if temp_dir is not None else Path(tempfile.gettempdir()) / "spatialvault"
        )
        self.poll_interval = POLL_INTERVAL_SECONDS
        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass

    async def run(self) -> None:
        """Process jobs forever, pausing when the queue is empty or on error."""
        logger.info("Starting job worker")
        while True:
            try:
                processed = await self.poll_and_process_job()
            except Exception as exc:  # keep the worker alive
                logger.error("Job worker error: %s", exc)
                processed = False
            if not processed:
                await asyncio.sleep(self.poll_interval)

    async def poll_and_process_job(self) -> bool:
        """Claim and run one job; return False when none was waiting."""
        job = await self._jobs.claim_next_job()
        if job is None:
            return False

        logger.info("Processing job %s (%s) for user %s", job.job_id, job.process_id, job.owner)
        try:
            if job.process_id == "import-raster":
                outputs = await self.process_import_raster(job.job_id, job.owner, job.inputs)
            elif job.process_id == "import-pointcloud":
                outputs = await self.process_import_pointcloud(job.job_id, job.owner, job.inputs)
            else:
                raise ProcessingError(f"Unknown process: {job.process_id}")
        except Exception as exc:
            await self._process_service.update_job_status(job.job_id, "failed", str(exc), None)
            logger.error("Job %s failed: %s", job.job_id, exc)
        else:
            await self._process_service.set_job_outputs(job.job_id, outputs)
            logger.info("Job %s completed successfully", job.job_id)
        return True

    async def process_import_raster(
        self, job_id: uuid.UUID, owner: str, inputs: Any
    ) -> dict[str, Any]:
        """Import a raster file as a (cloud optimized) GeoTIFF item."""
        parsed = parse_import_raster_inputs(inputs)
        return await self._run_import(
            job_id,
            owner,
            parsed,
            collection_type="raster",
            default_extension="tif",
            skip_conversion=parsed.skip_if_cog,
            detect=cog.is_cog,
            convert=cog.convert_to_cog,
            format_name="COG",
            converted_suffix="cog.tif",
            extract_bounds=self.extract_raster_bounds,
            storage_extension=lambda converted: "tif",
            media_type=lambda converted: _COG_MEDIA_TYPE if converted else _GEOTIFF_MEDIA_TYPE,
        )

    async def process_import_pointcloud(
        self, job_id: uuid.UUID, owner: str, inputs: Any
    ) -> dict[str, Any]:
        """Import a point cloud file as a COPC item."""
        parsed = parse_import_pointcloud_inputs(inputs)
        return await self._run_import(
            job_id,
            owner,
            parsed,
            collection_type="pointcloud",
            default_extension="laz",
            skip_conversion=parsed.skip_if_copc,
            detect=copc.is_copc,
            convert=copc.convert_to_copc,
            format_name="COPC",
            converted_suffix="copc.laz",
            extract_bounds=self.extract_pointcloud_bounds,
            storage_extension=lambda converted: "copc.laz" if converted else "laz",
            media_type=lambda converted: _COPC_MEDIA_TYPE,
        )

    async def _progress(self, job_id: uuid.UUID, message: str, percent: int) -> None:
        await self._process_service.update_job_status(job_id, "running", message, percent)

    async def _run_import(
        self,
        job_id: uuid.UUID,
        owner: str,
        inputs: Union[ImportRasterInputs, ImportPointCloudInputs],
        *,
        collection_type: str,
        default_extension: str,
        skip_conversion: bool,
        detect: Callable[[Path], bool],
        convert: Callable[[Path, Path], Awaitable[None]],
        format_name: str,
        converted_suffix: str,
        extract_bounds: Callable[[Path], Awaitable[tuple[str, int]]],
        storage_extension: Callable[[bool], str],
        media_type: Callable[[bool], str],
    ) -> dict[str, Any]:
        await self._progress(job_id, "Validating collection", 5)
        collection = await self.get_or_create_collection(owner, inputs.collection, collection_type)

        await self._progress(job_id, "Retrieving source file", 10)
        source_path = await self.get_input_file(inputs.data, job_id, default_extension)

        await self._progress(job_id, "Checking file format", 30)
        if skip_conversion and detect(source_path):
            logger.info("File is already a valid %s, skipping conversion", format_name)
            final_path, converted = source_path, False
        else:
            await self._progress(job_id, f"Converting to {format_name}", 40)
            output_path = self.temp_dir / f"{job_id}.{converted_suffix}"
            try:
                await convert(source_path, output_path)
            except SpatialVaultError as exc:
                logger.warning(
                    "%s conversion not available: %s, using source file", format_name, exc
                )
                final_path, converted = source_path, False
            else:
                final_path, converted = output_path, True

        await self._progress(job_id, "Extracting metadata", 60)
        geometry_wkt, srid = await extract_bounds(final_path)

        await self._progress(job_id, "Uploading to storage", 70)
        item_id = uuid.uuid4()
        s3_key = f"{owner}/{collection.table_name}/{item_id}.{storage_extension(converted)}"
        file_data = await asyncio.to_thread(final_path.read_bytes)
        await self._storage.put(s3_key, file_data)
        asset_href = self._storage.s3_uri(s3_key)

        await self._progress(job_id, "Creating database records", 90)
        item_datetime = _parse_rfc3339(inputs.datetime) if inputs.datetime is not None else None
        item = await self._item_service.create_item(
            collection_id=collection.id,
            geometry_wkt=geometry_wkt,
            srid=srid,
            datetime=item_datetime,
            properties=inputs.properties,
        )
        await self._item_service.create_asset(
            item_id=item.id,
            key="data",
            href=asset_href,
            media_type=media_type(converted),
            title=inputs.title,
            description=None,
            roles=["data"],
            file_size=len(file_data),
            extra_fields=None,
        )

        _remove_quietly(source_path)
        if converted and final_path != source_path:
            _remove_quietly(final_path)

        return {
            "item_id": str(item.id),
            "collection": inputs.collection,
            "asset_href": asset_href,
            "converted": converted,
        }

    async def get_or_create_collection(
        self, owner: str, collection_name: str, collection_type: str
    ) -> Any:
        """Return the named collection, creating it when it does not exist."""
        existing = await self._collection_service.get_collection(owner, collection_name)
        if existing is not None:
            if existing.collection_type != collection_type:
                raise BadRequestError(
                    f"Collection '{collection_name}' exists but is type "
                    f"'{existing.collection_type}', expected '{collection_type}'"
                )
            return existing

        canonical_name = (
            collection_name if ":" in collection_name else f"{owner}:{collection_name}"
        )
        return await self._collection_service.create_collection(
            owner=owner,
            canonical_name=canonical_name,
            created_by=owner,
            title=collection_name,
            description=None,
            collection_type=collection_type,
            srid=DEFAULT_SRID,
        )

    async def get_input_file(
        self, input_value: Any, job_id: uuid.UUID, default_extension: str
    ) -> Path:
        """Materialise the job's input as a local temporary file."""
        value = parse_input_value(input_value)
        if isinstance(value, ReferenceValue):
            return await self.download_file(value.href, job_id)

        try:
            data = base64.b64decode(value.value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise BadRequestError(f"Invalid base64: {exc}") from exc

        extension = extension_for_media_type(value.media_type) or default_extension
        local_path = self.temp_dir / f"{job_id}_source.{extension}"
        await asyncio.to_thread(local_path.write_bytes, data)
        logger.info("Wrote inline data (%d bytes) to %s", len(data), local_path)
        return local_path

    async def download_file(self, url: str, job_id: uuid.UUID) -> Path:
        """Fetch an ``s3://`` or HTTP(S) URL into a local temporary file."""
        local_path = self.temp_dir / f"{job_id}_source.{safe_extension_from_url(url)}"

        if url.startswith("s3://"):
            data = await self._storage.get(s3_key_from_url(url))
        elif url.startswith(("http://", "https://")):
            try:
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    response = await client.get(url)
            except httpx.HTTPError as exc:
                raise ProcessingError(f"Failed to download: {exc}") from exc
            if not response.is_success:
                raise ProcessingError(
                    f"Download failed with status: {response.status_code} "
                    f"{response.reason_phrase}"
                )
            data = response.content
        else:
            raise BadRequestError(f"Unsupported URL scheme: {url}")

        await asyncio.to_thread(local_path.write_bytes, data)
        logger.info("Downloaded %s to %s", url, local_path)
        return local_path

    async def extract_raster_bounds(self, path: Path) -> tuple[str, int]:
        """Footprint WKT and SRID of a raster, or the global extent if unknown."""
        try:
            meta = await cog.extract_raster_metadata(path)
        except SpatialVaultError:
            logger.warning("Could not extract raster bounds, using placeholder")
            return GLOBAL_EXTENT_WKT, DEFAULT_SRID
        minx, miny, maxx, maxy = meta.bounds
        return bounds_to_wkt(minx, miny, maxx, maxy), meta.srid

    async def extract_pointcloud_bounds(self, path: Path) -> tuple[str, int]:
        """2D footprint WKT and SRID of a point cloud, or the global extent."""
        try:
            meta = await copc.extract_pointcloud_metadata(path)
        except SpatialVaultError:
            logger.warning("Could not extract point cloud bounds, using placeholder")
            return GLOBAL_EXTENT_WKT, DEFAULT_SRID
        minx, miny, _minz, maxx, maxy, _maxz = meta.bounds
        return bounds_to_wkt(minx, miny, maxx, maxy), meta.srid