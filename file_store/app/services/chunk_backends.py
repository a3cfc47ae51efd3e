import json
from pathlib import Path
from typing import AsyncIterator, List, Optional, Tuple
import asyncio
import aiofiles
import aiofiles.os
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING
from logger_config import setup_logger
from app.models import BlobInfo

logger = setup_logger()


class ChunkBackend:
    """Durable storage primitives the blob store is built on.

    A backend knows nothing about chunking rules or publish order; it stores
    chunk payloads keyed by (blob_id, n) and metadata records keyed by blob_id.
    Driver errors (PyMongoError, OSError) propagate unchanged.
    """

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def write_chunk(self, blob_id: str, n: int, data: bytes):
        raise NotImplementedError

    def iter_chunks(self, blob_id: str, count: int) -> AsyncIterator[Tuple[int, bytes]]:
        """Yield (n, data) for chunks 0..count-1 in order, stopping early at the first gap."""
        raise NotImplementedError

    async def delete_chunks(self, blob_id: str):
        raise NotImplementedError

    async def insert_record(self, info: BlobInfo):
        raise NotImplementedError

    async def find_record(self, blob_id: str) -> Optional[BlobInfo]:
        raise NotImplementedError

    async def find_records(self) -> List[BlobInfo]:
        """All records in creation order."""
        raise NotImplementedError

    async def rename_record(self, blob_id: str, filename: str) -> bool:
        raise NotImplementedError

    async def delete_record(self, blob_id: str) -> bool:
        raise NotImplementedError

    async def orphaned_blob_ids(self) -> List[str]:
        """Blob ids that own chunks but have no metadata record."""
        raise NotImplementedError


class MongoChunkBackend(ChunkBackend):
    """Chunks and records in two collections of a MongoDB database.

    Layout follows the usual bucket convention: ``<bucket>.files`` holds one
    record per blob and ``<bucket>.chunks`` holds ``{files_id, n, data}``.
    """

    def __init__(self, client: AsyncIOMotorClient, db_name: str, bucket_name: str):
        self.client = client
        self.db = self.client[db_name]
        self.files = self.db[f"{bucket_name}.files"]
        self.chunks = self.db[f"{bucket_name}.chunks"]

    async def initialize(self):
        await self.chunks.create_index([("files_id", ASCENDING), ("n", ASCENDING)], unique=True)
        await self.files.create_index([("uploadDate", ASCENDING), ("_id", ASCENDING)])
        logger.debug(f"Indexes ensured on {self.files.name} and {self.chunks.name}")

    async def close(self):
        self.client.close()

    async def write_chunk(self, blob_id: str, n: int, data: bytes):
        await self.chunks.insert_one({"files_id": ObjectId(blob_id), "n": n, "data": data})

    async def iter_chunks(self, blob_id: str, count: int) -> AsyncIterator[Tuple[int, bytes]]:
        cursor = self.chunks.find(
            {"files_id": ObjectId(blob_id), "n": {"$lt": count}},
            projection={"n": True, "data": True},
        ).sort("n", ASCENDING)
        try:
            async for doc in cursor:
                yield doc["n"], bytes(doc["data"])
        finally:
            # Consumers may stop early; don't leave the server-side cursor open
            await cursor.close()

    async def delete_chunks(self, blob_id: str):
        await self.chunks.delete_many({"files_id": ObjectId(blob_id)})

    async def insert_record(self, info: BlobInfo):
        doc = info.to_document()
        doc["_id"] = ObjectId(info.id)
        await self.files.insert_one(doc)

    @staticmethod
    def _to_info(doc: dict) -> BlobInfo:
        doc["_id"] = str(doc["_id"])
        return BlobInfo(**doc)

    async def find_record(self, blob_id: str) -> Optional[BlobInfo]:
        doc = await self.files.find_one({"_id": ObjectId(blob_id)})
        if not doc:
            return None
        return self._to_info(doc)

    async def find_records(self) -> List[BlobInfo]:
        cursor = self.files.find().sort([("uploadDate", ASCENDING), ("_id", ASCENDING)])
        records = []
        async for doc in cursor:
            records.append(self._to_info(doc))
        return records

    async def rename_record(self, blob_id: str, filename: str) -> bool:
        result = await self.files.update_one({"_id": ObjectId(blob_id)}, {"$set": {"filename": filename}})
        return result.matched_count > 0

    async def delete_record(self, blob_id: str) -> bool:
        result = await self.files.delete_one({"_id": ObjectId(blob_id)})
        return result.deleted_count > 0

    async def orphaned_blob_ids(self) -> List[str]:
        owners = await self.chunks.distinct("files_id")
        orphans = []
        for owner in owners:
            if await self.files.find_one({"_id": owner}, projection={"_id": True}) is None:
                orphans.append(str(owner))
        return orphans


class FileChunkBackend(ChunkBackend):
    """Chunks and records on the local filesystem.

    ``files/<id>.json`` holds the record, ``chunks/<id>/<n>.chunk`` the payloads.
    Records are written to ``temp/`` first and renamed into place so readers
    never see a half-written record.
    """

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.files_dir = self.data_dir / "files"
        self.chunks_dir = self.data_dir / "chunks"
        self.temp_dir = self.data_dir / "temp"
        # Serializes read-modify-write of records so a rename can't resurrect a deleted record
        self.records_lock = asyncio.Lock()

    async def initialize(self):
        for directory in (self.files_dir, self.chunks_dir, self.temp_dir):
            directory.mkdir(exist_ok=True, parents=True)
        logger.debug(f"Storage directories created/verified under {self.data_dir}")

        # Clean temp directory at startup
        files_removed = 0
        for file in self.temp_dir.glob("*"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        logger.info(f"Cleaned temporary directory, removed {files_removed} files")

    def _record_path(self, blob_id: str) -> Path:
        return self.files_dir / f"{blob_id}.json"

    def _chunk_path(self, blob_id: str, n: int) -> Path:
        return self.chunks_dir / blob_id / f"{n}.chunk"

    async def write_chunk(self, blob_id: str, n: int, data: bytes):
        chunk_path = self._chunk_path(blob_id, n)
        await aiofiles.os.makedirs(chunk_path.parent, exist_ok=True)
        async with aiofiles.open(chunk_path, 'wb') as f:
            await f.write(data)

    async def iter_chunks(self, blob_id: str, count: int) -> AsyncIterator[Tuple[int, bytes]]:
        for n in range(count):
            try:
                async with aiofiles.open(self._chunk_path(blob_id, n), 'rb') as f:
                    data = await f.read()
            except FileNotFoundError:
                return
            yield n, data

    async def delete_chunks(self, blob_id: str):
        blob_chunks_dir = self.chunks_dir / blob_id
        if not await aiofiles.os.path.isdir(blob_chunks_dir):
            return
        for name in await aiofiles.os.listdir(blob_chunks_dir):
            await aiofiles.os.unlink(blob_chunks_dir / name)
        await aiofiles.os.rmdir(blob_chunks_dir)

    async def _write_record(self, info: BlobInfo):
        temp_path = self.temp_dir / f"{info.id}_temp.json"
        async with aiofiles.open(temp_path, 'w') as f:
            await f.write(json.dumps(info.to_json()))
        await aiofiles.os.replace(str(temp_path), str(self._record_path(info.id)))

    async def _read_record(self, path: Path) -> Optional[BlobInfo]:
        try:
            async with aiofiles.open(path, 'r') as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        return BlobInfo(**json.loads(content))

    async def insert_record(self, info: BlobInfo):
        async with self.records_lock:
            await self._write_record(info)

    async def find_record(self, blob_id: str) -> Optional[BlobInfo]:
        return await self._read_record(self._record_path(blob_id))

    async def find_records(self) -> List[BlobInfo]:
        records = []
        for path in self.files_dir.glob("*.json"):
            info = await self._read_record(path)
            # Deleted between the glob and the read
            if info is not None:
                records.append(info)
        records.sort(key=lambda info: (info.upload_date, info.id))
        return records

    async def rename_record(self, blob_id: str, filename: str) -> bool:
        async with self.records_lock:
            info = await self.find_record(blob_id)
            if info is None:
                return False
            await self._write_record(info.model_copy(update={"filename": filename}))
            return True

    async def delete_record(self, blob_id: str) -> bool:
        async with self.records_lock:
            try:
                await aiofiles.os.unlink(self._record_path(blob_id))
            except FileNotFoundError:
                return False
            return True

    async def orphaned_blob_ids(self) -> List[str]:
        orphans = []
        for blob_chunks_dir in self.chunks_dir.iterdir():
            if blob_chunks_dir.is_dir() and not self._record_path(blob_chunks_dir.name).exists():
                orphans.append(blob_chunks_dir.name)
        return orphans
