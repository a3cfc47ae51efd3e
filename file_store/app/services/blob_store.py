import base64
import mimetypes
import re
from contextlib import aclosing
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set, Tuple
from bson import ObjectId
from pymongo.errors import PyMongoError
import config
from logger_config import setup_logger
from app.errors import NotFound, StreamFailure, ValidationFailure, WriteFailure
from app.models import BlobInfo
from app.services.archive import ZipStreamWriter
from app.services.chunk_backends import ChunkBackend

logger = setup_logger()

# Errors a backend may raise when the underlying storage misbehaves
STORAGE_ERRORS = (PyMongoError, OSError)

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Names end up in response headers and zip entries
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def chunk_count(length: int, chunk_size: int) -> int:
    """Number of chunks a blob of *length* bytes occupies."""
    return -(-length // chunk_size)


async def _iter_source(source, read_size: int) -> AsyncIterator[bytes]:
    """Normalize an upload source into an async iterator of byte pieces."""
    if isinstance(source, (bytes, bytearray)):
        if source:
            yield bytes(source)
    elif hasattr(source, "read"):
        while piece := await source.read(read_size):
            yield piece
    else:
        async for piece in source:
            if piece:
                yield piece


class BlobStream:
    """Forward-only reader over the chunks of one blob.

    The stream holds a reader lease on the blob while it is open, so a delete
    issued mid-read only hides the record and leaves the chunks in place until
    the stream finishes. Iterable once.
    """

    def __init__(self, store: "BlobStore", info: BlobInfo):
        self._store = store
        self.info = info
        self._leased = False
        self._released = False
        self._iterator = None

    async def open(self) -> BlobInfo:
        """Take the reader lease and refresh the metadata. Raises NotFound if the blob is gone."""
        if not self._leased:
            self.info = await self._store._acquire(self.info.id)
            self._leased = True
        return self.info

    async def aclose(self):
        """Stop reading, close the chunk cursor and give the lease back. Safe to call twice."""
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._release_lease()

    async def _release_lease(self):
        if self._leased and not self._released:
            self._released = True
            await self._store._release(self.info.id)

    def __aiter__(self):
        if self._iterator is not None:
            raise StreamFailure(f"Stream for blob {self.info.id} was already consumed")
        self._iterator = self._iterate()
        return self._iterator

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            info = await self.open()
            remaining = info.length
            index = 0
            chunks = self._store.backend.iter_chunks(info.id, chunk_count(info.length, info.chunk_size))
            try:
                async with aclosing(chunks):
                    async for n, data in chunks:
                        if n != index or len(data) != min(info.chunk_size, remaining):
                            raise StreamFailure(f"Chunk {index} of blob {info.id} is corrupt")
                        remaining -= len(data)
                        index += 1
                        yield data
            except STORAGE_ERRORS as e:
                logger.error(f"Error reading chunk {index} of blob {info.id}: {str(e)}", exc_info=True)
                raise StreamFailure(f"Unable to read blob {info.id}: {str(e)}") from e
            if remaining:
                raise StreamFailure(f"Blob {info.id} is missing chunks from index {index}")
        finally:
            await self._release_lease()


class BlobStore:
    """Chunked blob storage on top of a ChunkBackend.

    Writes go chunk by chunk and publish the metadata record last; deletes
    hide the record first and remove chunks once no reader holds a lease.
    """

    def __init__(
        self,
        backend: ChunkBackend,
        chunk_size: int = config.CHUNK_SIZE,
        max_length: int = config.MAX_UPLOAD_SIZE,
        read_size: int = config.READ_SIZE,
    ):
        if chunk_size <= 0:
            raise ValueError("Chunk size must be positive")
        self.backend = backend
        self.chunk_size = chunk_size
        self.max_length = max_length
        self.read_size = read_size
        # Reader leases per blob id; only touched between awaits, so no lock is needed
        self._leases: Dict[str, int] = {}
        self._pending_deletes: Set[str] = set()

    async def initialize(self):
        """Prepare the backend and sweep chunks left behind by failed writes or deletes."""
        logger.info("Initializing blob store...")
        await self.backend.initialize()
        orphans = await self.backend.orphaned_blob_ids()
        for blob_id in orphans:
            await self.backend.delete_chunks(blob_id)
        logger.info(f"Removed chunks of {len(orphans)} orphaned blobs")

    async def close(self):
        await self.backend.close()

    @staticmethod
    def validate_id(blob_id: str) -> str:
        """Return the normalized blob id or raise ValidationFailure."""
        if not isinstance(blob_id, str) or not ObjectId.is_valid(blob_id):
            raise ValidationFailure(f"Invalid file id: {blob_id!r}")
        return str(ObjectId(blob_id))

    @staticmethod
    def validate_name(name: Optional[str]) -> str:
        if not name or not name.strip():
            raise ValidationFailure("File name must not be empty")
        if len(name) > config.MAX_FILENAME_LENGTH:
            raise ValidationFailure(f"File name too long. Maximum length is {config.MAX_FILENAME_LENGTH}")
        if CONTROL_CHARS.search(name):
            raise ValidationFailure("File name must not contain control characters")
        return name

    # Reader leases

    async def _acquire(self, blob_id: str) -> BlobInfo:
        self._leases[blob_id] = self._leases.get(blob_id, 0) + 1
        acquired = False
        try:
            info = await self.backend.find_record(blob_id)
            if info is None:
                raise NotFound(f"File {blob_id} not found")
            acquired = True
            return info
        except STORAGE_ERRORS as e:
            raise StreamFailure(f"Unable to read file {blob_id}: {str(e)}") from e
        finally:
            if not acquired:
                await self._release(blob_id)

    async def _release(self, blob_id: str):
        count = self._leases[blob_id] - 1
        if count:
            self._leases[blob_id] = count
            return
        del self._leases[blob_id]
        if blob_id in self._pending_deletes:
            self._pending_deletes.discard(blob_id)
            logger.debug(f"Last reader of deleted blob {blob_id} released, removing chunks")
            await self._remove_chunks(blob_id)

    async def _remove_chunks(self, blob_id: str):
        try:
            await self.backend.delete_chunks(blob_id)
        except STORAGE_ERRORS as e:
            # The record is already gone, so these chunks are unreachable until the startup sweep
            logger.error(f"Error removing chunks of blob {blob_id}: {str(e)}", exc_info=True)

    async def _discard_partial(self, blob_id: str):
        try:
            await self.backend.delete_record(blob_id)
            await self.backend.delete_chunks(blob_id)
        except STORAGE_ERRORS as e:
            logger.warning(f"Could not clean up partial upload {blob_id}, leaving it orphaned: {str(e)}")

    # Public operations

    async def put(self, name: str, content_type: Optional[str], source) -> str:
        """Store a byte stream as a new blob and return its id.

        Args:
            name: Display name of the file
            content_type: Declared content type; guessed from the name when missing
            source: bytes, an object with an async read(size), or an async iterable of bytes
        """
        name = self.validate_name(name)
        if not content_type or content_type == DEFAULT_CONTENT_TYPE:
            guessed_type, _ = mimetypes.guess_type(name)
            content_type = guessed_type or DEFAULT_CONTENT_TYPE

        blob_id = str(ObjectId())
        logger.debug(f"Writing blob {blob_id} ({name}, {content_type})")

        buffer = bytearray()
        length = 0
        n = 0
        try:
            async for piece in _iter_source(source, self.read_size):
                length += len(piece)
                if length > self.max_length:
                    raise ValidationFailure(f"File exceeds maximum upload size ({self.max_length} bytes)")
                buffer += piece
                while len(buffer) >= self.chunk_size:
                    await self.backend.write_chunk(blob_id, n, bytes(buffer[:self.chunk_size]))
                    del buffer[:self.chunk_size]
                    n += 1
            if buffer:
                await self.backend.write_chunk(blob_id, n, bytes(buffer))
                n += 1

            # Publish last: the record only becomes visible once every chunk is written
            info = BlobInfo(
                _id=blob_id,
                filename=name,
                contentType=content_type,
                length=length,
                chunkSize=self.chunk_size,
                uploadDate=datetime.now(timezone.utc),
            )
            await self.backend.insert_record(info)
        except STORAGE_ERRORS as e:
            logger.error(f"Error writing blob {blob_id}: {str(e)}", exc_info=True)
            await self._discard_partial(blob_id)
            raise WriteFailure(f"Unable to store file {name}: {str(e)}") from e
        except BaseException:
            await self._discard_partial(blob_id)
            raise

        logger.info(f"Stored blob {blob_id} ({name}): {length} bytes in {n} chunks")
        return blob_id

    async def get(self, blob_id: str) -> Tuple[BlobInfo, BlobStream]:
        """Look up a blob and return its metadata with an open stream over its bytes.

        The caller must iterate the stream or call ``aclose()`` on it.
        """
        blob_id = self.validate_id(blob_id)
        stream = BlobStream(self, BlobInfo.model_construct(id=blob_id))
        info = await stream.open()
        return info, stream

    async def get_all(self) -> List[Tuple[BlobInfo, BlobStream]]:
        """Snapshot every blob; each stream takes its lease when first iterated."""
        return [(info, BlobStream(self, info)) for info in await self.list()]

    async def list(self) -> List[BlobInfo]:
        try:
            return await self.backend.find_records()
        except STORAGE_ERRORS as e:
            logger.error(f"Error listing blobs: {str(e)}", exc_info=True)
            raise StreamFailure(f"Unable to list files: {str(e)}") from e

    async def rename(self, blob_id: str, new_name: str):
        blob_id = self.validate_id(blob_id)
        new_name = self.validate_name(new_name)
        try:
            renamed = await self.backend.rename_record(blob_id, new_name)
        except STORAGE_ERRORS as e:
            logger.error(f"Error renaming blob {blob_id}: {str(e)}", exc_info=True)
            raise WriteFailure(f"Unable to rename file {blob_id}: {str(e)}") from e
        if not renamed:
            raise NotFound(f"File {blob_id} not found")
        logger.info(f"Renamed blob {blob_id} to {new_name}")

    async def delete(self, blob_id: str):
        blob_id = self.validate_id(blob_id)
        try:
            deleted = await self.backend.delete_record(blob_id)
        except STORAGE_ERRORS as e:
            logger.error(f"Error deleting blob {blob_id}: {str(e)}", exc_info=True)
            raise WriteFailure(f"Unable to delete file {blob_id}: {str(e)}") from e
        if not deleted:
            raise NotFound(f"File {blob_id} not found")

        if self._leases.get(blob_id):
            self._pending_deletes.add(blob_id)
            logger.info(f"Deleted blob {blob_id}, chunk removal deferred until readers finish")
        else:
            await self._remove_chunks(blob_id)
            logger.info(f"Deleted blob {blob_id}")

    async def archive(self, blob_ids: Optional[Iterable[str]] = None) -> AsyncIterator[bytes]:
        """Return a zip stream of the selected blobs, or of every blob when *blob_ids* is None.

        Selection is resolved up front, so NotFound is raised before any byte is
        produced. A selected blob deleted before its entry starts is skipped.
        """
        snapshot = await self.list()
        if blob_ids is None:
            if not snapshot:
                raise NotFound("No files found")
            selected = snapshot
        else:
            wanted = list(dict.fromkeys(self.validate_id(blob_id) for blob_id in blob_ids))
            records = {info.id: info for info in snapshot}
            missing = [blob_id for blob_id in wanted if blob_id not in records]
            if missing:
                raise NotFound(f"Files not found: {', '.join(missing)}")
            selected = [records[blob_id] for blob_id in wanted]
        logger.info(f"Archiving {len(selected)} blobs")
        return self._archive_stream(selected)

    async def _archive_stream(self, selected: List[BlobInfo]) -> AsyncIterator[bytes]:
        writer = ZipStreamWriter()
        for info in selected:
            stream = BlobStream(self, info)
            try:
                info = await stream.open()
            except NotFound:
                logger.warning(f"Blob {info.id} was deleted before it was archived, skipping")
                continue
            try:
                with writer.open_entry(info.filename, info.length, info.upload_date) as entry:
                    async for data in stream:
                        entry.write(data)
                        if out := writer.drain():
                            yield out
            finally:
                await stream.aclose()
            if out := writer.drain():
                yield out
        yield writer.close()

    async def export_base64(self) -> AsyncIterator[str]:
        """Return a JSON array of base64-encoded file contents, produced piece by piece."""
        snapshot = await self.list()
        return self._base64_stream(snapshot)

    async def _base64_stream(self, snapshot: List[BlobInfo]) -> AsyncIterator[str]:
        yield "["
        first = True
        for info in snapshot:
            stream = BlobStream(self, info)
            try:
                await stream.open()
            except NotFound:
                logger.warning(f"Blob {info.id} was deleted before it was exported, skipping")
                continue
            yield '"' if first else ',"'
            first = False
            # base64 works on 3-byte groups; carry the remainder into the next chunk
            carry = b""
            try:
                async for data in stream:
                    data = carry + data
                    cut = len(data) - len(data) % 3
                    carry = data[cut:]
                    if cut:
                        yield base64.b64encode(data[:cut]).decode("ascii")
            finally:
                await stream.aclose()
            yield base64.b64encode(carry).decode("ascii") + '"'
        yield "]"
