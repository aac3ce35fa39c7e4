import structlog
from fastapi import APIRouter, Header, HTTPException, status
from fastapi.responses import StreamingResponse

from scenedesk.api.dependencies import Storage
from scenedesk.core.errors import ObjectNotFoundError, RangeNotSatisfiableError
from scenedesk.services import StorageService

logger = structlog.get_logger()
router = APIRouter(tags=["Objects"])
public_router = APIRouter(tags=["Objects"])


def _stream_object(storage: StorageService, key: str, range_header: str | None) -> StreamingResponse:
    try:
        stream = storage.open_stream(key, range_header=range_header)
    except ObjectNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")
    except RangeNotSatisfiableError as e:
        size = "*" if e.object_size is None else e.object_size
        raise HTTPException(
            status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
            detail="Requested range not satisfiable",
            headers={"Content-Range": f"bytes */{size}"},
        )

    headers = {"Accept-Ranges": "bytes", "Content-Length": str(stream.content_length)}
    if stream.partial:
        headers["Content-Range"] = stream.content_range

    logger.debug("object_streamed", key=key, range=range_header)
    return StreamingResponse(
        stream.iter_chunks(),
        status_code=status.HTTP_206_PARTIAL_CONTENT if stream.partial else status.HTTP_200_OK,
        media_type=stream.content_type,
        headers=headers,
    )


@router.get("/{object_path:path}", summary="Stream a stored object")
async def get_object(object_path: str, storage: Storage, range: str | None = Header(None)):
    """Streams an uploaded object, honouring a single ``Range`` header with 206."""
    return _stream_object(storage, storage.key_from_object_path(object_path), range)


@public_router.get("/{file_path:path}", summary="Stream a public file")
async def get_public_object(file_path: str, storage: Storage, range: str | None = Header(None)):
    """Serves thumbnails and other shared files kept under the bucket's public directory."""
    return _stream_object(storage, storage.public_key(file_path), range)
