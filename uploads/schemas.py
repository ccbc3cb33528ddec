from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChunkStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    segmentIndex: int | None = None
    status: str


class RecordingMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    totalSegments: int = 0
    successfulChunks: int = 0
    failedChunks: int = 0
    chunkStatuses: list[ChunkStatus] = Field(default_factory=list)


class RecordingRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    sessionId: str | None = None
    isParentSession: bool = False
    transcriptId: str | None = None
    status: str
    audioFiles: list[Any] = Field(default_factory=list)
    metadata: RecordingMetadata = Field(default_factory=RecordingMetadata)


class RecordingListing(BaseModel):
    recordings: list[RecordingRecord] = Field(default_factory=list)


class UploadResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool
    transcript: dict[str, Any] | None = None
    error: str | None = None
