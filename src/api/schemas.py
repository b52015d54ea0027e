"""Request bodies for the REST API. Field names are camelCase on the wire."""

import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateExecutionRequest(CamelModel):
    batch_id: uuid.UUID
    execution_type: Literal["test", "production"] = "test"
    concurrency: int | None = Field(default=None, ge=1, le=20)
    sample_size: int | None = Field(default=None, ge=1)


class StopExecutionRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=500)


class UpdateExecutionRequest(CamelModel):
    concurrency: int = Field(ge=1, le=20)


class ColumnDefinition(CamelModel):
    name: str = Field(min_length=1)
    type: Literal["text", "number", "url"] = "text"
    is_ground_truth: bool = False
    is_url: bool = False


class CreateBatchRequest(CamelModel):
    name: str = Field(min_length=1, max_length=200)
    goal: str | None = None
    column_schema: list[ColumnDefinition] = Field(min_length=1)
    rows: list[dict[str, Any]] = Field(min_length=1)


class SnapshotRequest(CamelModel):
    execution_id: uuid.UUID | None = None
    notes: str | None = Field(default=None, max_length=1000)


class BulkJobsRequest(CamelModel):
    job_ids: list[uuid.UUID] = Field(min_length=1)


class BulkUpdateRequest(BulkJobsRequest):
    updates: dict[str, Any] = Field(min_length=1)
