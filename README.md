# spatialvault

Asynchronous job processing for a spatial data catalogue. A `JobWorker`
claims pending import jobs, fetches the source file (inline base64 data,
an `s3://` reference or an HTTP(S) URL), checks whether it is already
cloud-optimised, uploads it to object storage and records an item with a
`data` asset.

Two processes are understood:

- `import-raster`: GeoTIFF sources, stored under the key
  `<owner>/<table_name>/<item-uuid>.tif`
- `import-pointcloud`: LAS/LAZ sources, stored under
  `<owner>/<table_name>/<item-uuid>.laz` (`.copc.laz` when a conversion
  has taken place)

Any other process id makes the job fail with `Unknown process: <id>`.

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Usage

`JobWorker` lives in `spatialvault.worker` and is wired to collaborators
you supply. Their expected shape is described by the protocols in the
same module:

- `JobQueue`: `async claim_next_job()` returns a `ClaimedJob`
  (`job_id`, `process_id`, `owner`, `inputs`) or `None`
- `ObjectStorage`: `async put(key, data)`, `async get(key)`, `s3_uri(key)`
- `ProcessService`: `async update_job_status(job_id, status, message, progress)`
  and `async set_job_outputs(job_id, outputs)`
- `ItemService`: `async create_item(...)` and `async create_asset(...)`,
  called with keyword arguments
- `CollectionService`: `async get_collection(owner, name)` and
  `async create_collection(...)`; collections expose `id`, `table_name`
  and `collection_type`

```python
import asyncio
from pathlib import Path

from spatialvault.worker import JobWorker

worker = JobWorker(
    jobs=job_queue,
    storage=storage,
    process_service=process_service,
    item_service=item_service,
    collection_service=collection_service,
    temp_dir=Path("/tmp/spatialvault"),
)

asyncio.run(worker.run())
```

If `temp_dir` is `None`, a `spatialvault` directory under the system
temporary directory is used.

`run()` polls forever: after a job it looks for the next one at once, and
when the queue is empty or an error occurs it waits `poll_interval`
seconds (five by default). A single step is available as
`poll_and_process_job()`, which returns `True` when a job was handled and
`False` when none was waiting.

While a job runs, its status is updated with progress messages
(validating the collection, retrieving the file, checking the format,
converting, extracting metadata, uploading, creating records). On success
the outputs are `item_id`, `collection`, `asset_href` and `converted`; on
failure the job is marked `failed` with the error message.

If the named collection does not exist it is created with SRID 4326, its
canonical name being `<owner>:<name>` unless the name already contains a
colon. An existing collection of the wrong type is rejected.

### Job inputs

Inputs are validated with `parse_import_raster_inputs` and
`parse_import_pointcloud_inputs`:

- `collection` (required string)
- `data` (required): `{"value": "<base64>", "mediaType": "..."}` or
  `{"href": "<url>"}`; see `parse_input_value`
- `skip_if_cog` / `skipIfCog` or `skip_if_copc` / `skipIfCopc`
  (boolean, default `True`)
- `datetime` (RFC 3339 string; ignored if it cannot be parsed),
  `properties` (object), `title` (string)

Invalid inputs raise `BadRequestError`.

### Helpers

```python
from spatialvault.worker import (
    bounds_to_wkt,
    extension_for_media_type,
    s3_key_from_url,
    safe_extension_from_url,
)

bounds_to_wkt(0, 0, 1, 1)          # "POLYGON((0 0, 1 0, 1 1, 0 1, 0 0))"
extension_for_media_type("image/geotiff")                     # "tif"
safe_extension_from_url("https://example.com/data/scene.tif")  # "tif"
s3_key_from_url("s3://bucket/path/to/file.laz")                # "path/to/file.laz"
```

`safe_extension_from_url` returns `bin` for any extension that is not
made only of ASCII letters and digits or is longer than ten characters.

## Format checks

`spatialvault.cog.is_cog` never reports a file as a COG.
`spatialvault.copc.is_copc` reports `True` only for files whose last
extension is `.copc`.

## What it does not do

The package has no raster or point cloud backend: `convert_to_cog`,
`convert_to_copc`, `extract_raster_metadata` and
`extract_pointcloud_metadata` always raise `ProcessingError`. The worker
handles this by storing the source file unchanged (`converted` is
`False`) and using the global WGS84 extent
`POLYGON((-180 -90, 180 -90, 180 90, -180 90, -180 -90))` as the item
geometry.

It also ships no database, job queue, object storage or HTTP API, and no
command-line entry point; those are supplied by the caller through the
collaborator objects above.

## Errors

Errors derive from `spatialvault.errors.SpatialVaultError`:
`ProcessingError` for failed processing steps (conversion, metadata,
downloads) and `BadRequestError` for bad job inputs, invalid base64 or
unsupported URL schemes.