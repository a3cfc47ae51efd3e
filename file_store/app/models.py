from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field, field_validator


class BlobInfo(BaseModel):
    """Metadata record of a stored blob, as persisted and as served by /info/files."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="_id")
    filename: str
    content_type: str = Field(alias="contentType")
    length: int
    chunk_size: int = Field(alias="chunkSize")
    upload_date: datetime = Field(alias="uploadDate")

    @field_validator('upload_date')
    @classmethod
    def ensure_utc(cls, v):
        # Mongo hands back naive datetimes that are UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def summary(self) -> dict:
        """Compact listing shape served by /files."""
        record = self.to_json()
        return {
            "filename": record["filename"],
            "contentType": record["contentType"],
            "uploadDate": record["uploadDate"],
            "length": record["length"],
            "fileId": record["_id"],
        }


class RenameIn(BaseModel):
    filename: str
