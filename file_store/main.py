from pathlib import Path
from typing import List, Optional
from urllib.parse import quote
from fastapi import FastAPI, Request, Depends, UploadFile, File, Query
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from motor.motor_asyncio import AsyncIOMotorClient
import uvicorn
from contextlib import asynccontextmanager
import config
from logger_config import setup_logger
from app.errors import BlobStoreError, NotFound, ValidationFailure
from app.models import RenameIn
from app.services.blob_store import BlobStore, BlobStream
from app.services.chunk_backends import ChunkBackend, FileChunkBackend, MongoChunkBackend

# Logger setup
logger = setup_logger()


def create_backend() -> ChunkBackend:
    """Build the chunk backend selected by config.STORAGE_BACKEND."""
    if config.STORAGE_BACKEND == "mongo":
        return MongoChunkBackend(AsyncIOMotorClient(config.MONGO_URI), config.MONGO_DB, config.BUCKET_NAME)
    if config.STORAGE_BACKEND == "filesystem":
        return FileChunkBackend(Path(config.DATA_DIR))
    raise ValueError(f"Unknown storage backend: {config.STORAGE_BACKEND}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create and initialize the blob store
    app.state.blob_store = BlobStore(create_backend(), chunk_size=config.CHUNK_SIZE)
    await app.state.blob_store.initialize()
    logger.info(f"Blob store ready ({config.STORAGE_BACKEND} backend)")
    yield
    await app.state.blob_store.close()


# Create FastAPI app with lifespan
app = FastAPI(title="File Store Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_blob_store(request: Request) -> BlobStore:
    return request.app.state.blob_store


def error_response(status_code: int, text: str, error: Optional[str] = None) -> JSONResponse:
    """JSON error body in the nested {"error": {"text", "error"}} shape."""
    body = {"text": text}
    if error:
        body["error"] = error
    return JSONResponse(status_code=status_code, content={"error": body})


def content_disposition(kind: str, filename: Optional[str] = None) -> str:
    if filename is None:
        return kind
    # Header values must be latin-1; keep an ASCII fallback and the exact name in filename*
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "'")
    fallback = "".join(ch for ch in fallback if ch.isprintable())
    return f"{kind}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


def stream_response(stream: BlobStream, disposition: str) -> StreamingResponse:
    info = stream.info
    return StreamingResponse(
        stream,
        media_type=info.content_type,
        headers={
            "content-disposition": disposition,
            "content-length": str(info.length),
        },
        # Releases the reader lease even if the client went away mid-stream
        background=BackgroundTask(stream.aclose),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.info(f"Rejected malformed request to {request.url.path}")
    return JSONResponse(
        status_code=400,
        content={"error": {"text": "Invalid request", "details": jsonable_encoder(exc.errors())}},
    )


@app.post("/upload/file", status_code=201)
async def upload_file(
    file: Optional[UploadFile] = File(None),
    store: BlobStore = Depends(get_blob_store),
):
    """Upload a single file from the multipart field ``file``."""
    if file is None:
        return JSONResponse(status_code=400, content={"error": "No file uploaded"})

    logger.info(f"Receiving upload request for file: {file.filename}")
    try:
        file_id = await store.put(file.filename, file.content_type, file)
    except BlobStoreError as e:
        logger.error(f"Error uploading file {file.filename}: {e.message}")
        return JSONResponse(status_code=400, content={"error": f"Unable to upload file: {e.message}"})
    finally:
        await file.close()

    return {"text": "File uploaded successfully !", "fileId": file_id}


@app.post("/upload/files", status_code=201)
async def upload_files(
    files: Optional[List[UploadFile]] = File(None),
    store: BlobStore = Depends(get_blob_store),
):
    """Upload every file in the multipart field ``files``."""
    if not files:
        return error_response(400, "Unable to upload files", "No files uploaded")

    logger.info(f"Receiving upload request for {len(files)} files")
    file_ids = []
    try:
        for file in files:
            file_ids.append(await store.put(file.filename, file.content_type, file))
    except BlobStoreError as e:
        # Files stored before the failure stay stored
        logger.error(f"Error uploading files after {len(file_ids)} succeeded: {e.message}")
        return error_response(400, "Unable to upload files", e.message)
    finally:
        for file in files:
            await file.close()

    return {"text": "Files uploaded successfully !", "fileIds": file_ids}


@app.get("/download/files/{file_id}")
async def download_file(file_id: str, store: BlobStore = Depends(get_blob_store)):
    """Download one file as an attachment."""
    logger.info(f"Receiving download request for file_id: {file_id}")
    try:
        info, stream = await store.get(file_id)
    except NotFound:
        return error_response(404, "File not found")
    except BlobStoreError as e:
        logger.error(f"Error downloading file {file_id}: {e.message}")
        return error_response(400, "Unable to download file", e.message)

    return stream_response(stream, content_disposition("attachment", info.filename))


@app.get("/download/files")
async def download_files(
    ids: Optional[List[str]] = Query(None),
    store: BlobStore = Depends(get_blob_store),
):
    """Download all files, or the ones named by repeated ``ids`` parameters, as a zip archive."""
    logger.info("Receiving archive download request")
    try:
        archive = await store.archive(ids)
    except NotFound as e:
        return error_response(404, "No files found", e.message)
    except BlobStoreError as e:
        logger.error(f"Error preparing archive: {e.message}")
        return error_response(400, "Unable to download files", e.message)

    return StreamingResponse(
        archive,
        media_type="application/zip",
        headers={"content-disposition": content_disposition("attachment", "files.zip")},
        background=BackgroundTask(archive.aclose),
    )


@app.get("/download/files2")
async def download_files_base64(store: BlobStore = Depends(get_blob_store)):
    """Every file's content as a JSON array of base64 strings."""
    logger.info("Receiving base64 export request")
    try:
        export = await store.export_base64()
    except BlobStoreError as e:
        logger.error(f"Error preparing base64 export: {e.message}")
        return error_response(400, "Unable to retrieve files", e.message)

    return StreamingResponse(export, media_type="application/json", background=BackgroundTask(export.aclose))


@app.put("/rename/file/{file_id}")
async def rename_file(file_id: str, payload: RenameIn, store: BlobStore = Depends(get_blob_store)):
    logger.info(f"Receiving rename request for file_id: {file_id}")
    try:
        await store.rename(file_id, payload.filename)
    except BlobStoreError as e:
        logger.error(f"Error renaming file {file_id}: {e.message}")
        return error_response(400, "Unable to rename file", e.message)
    return {"text": "File renamed successfully !"}


@app.delete("/delete/file/{file_id}")
async def delete_file(file_id: str, store: BlobStore = Depends(get_blob_store)):
    logger.info(f"Receiving delete request for file_id: {file_id}")
    try:
        await store.delete(file_id)
    except BlobStoreError as e:
        logger.error(f"Error deleting file {file_id}: {e.message}")
        return error_response(400, "Unable to delete file", e.message)
    return {"text": "File deleted successfully !"}


@app.get("/files")
async def list_files(store: BlobStore = Depends(get_blob_store)):
    """Compact listing of every stored file."""
    try:
        files = await store.list()
    except BlobStoreError as e:
        return JSONResponse(status_code=500, content={"error": e.message})
    return [info.summary() for info in files]


@app.get("/info/files")
async def files_info(store: BlobStore = Depends(get_blob_store)):
    """Full metadata records, as consumed by the browser viewer."""
    try:
        files = await store.list()
    except BlobStoreError as e:
        return JSONResponse(
            status_code=500,
            content={"error": "Error fetching file information", "details": e.message},
        )
    return [info.to_json() for info in files]


@app.get("/file/{file_id}")
async def view_file(file_id: str, store: BlobStore = Depends(get_blob_store)):
    """Serve a file inline so it can be embedded in a frame."""
    try:
        _, stream = await store.get(file_id)
    except ValidationFailure:
        return JSONResponse(status_code=400, content={"error": "Invalid fileId"})
    except NotFound:
        return JSONResponse(status_code=404, content={"error": "File not found"})
    except BlobStoreError as e:
        logger.error(f"Error serving file {file_id}: {e.message}")
        return JSONResponse(status_code=500, content={"error": "Error downloading file"})

    return stream_response(stream, content_disposition("inline"))


if __name__ == "__main__":
    logger.info("Starting File Store Server...")
    logger.info(f"Storage backend: {config.STORAGE_BACKEND}")
    logger.info(f"Chunk size: {config.CHUNK_SIZE} bytes")
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
