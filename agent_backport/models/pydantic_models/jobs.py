"""
Pydantic models for backport job records.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from agent_backport.models.enums import JobStatus


class JobCreate(BaseModel):
    """Parameters of a new backport job. All of them are immutable afterwards."""

    model_config = ConfigDict(extra="forbid")

    repository: str = Field(pattern=r"^[^/\s]+/[^/\s]+$")
    installation_id: int
    source_pr: int = Field(gt=0)
    target_branch: str = Field(min_length=1)
    requested_by: str
    comment_id: int

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split("/", 1)[1]


class JobUpdate(BaseModel):
    """
    Mutable job fields.

    Identity, creation time and job parameters are not fields here, so
    supplying them is rejected. The outcome fields travel with the status
    that owns them: ``result_pr`` only with ``completed``, ``error`` only
    with ``failed``.
    """

    model_config = ConfigDict(extra="forbid")

    status: JobStatus | None = None
    result_pr: int | None = Field(default=None, gt=0)
    error: str | None = None

    @model_validator(mode="after")
    def check_outcome_fields(self) -> "JobUpdate":
        if self.status == JobStatus.COMPLETED:
            if self.result_pr is None or self.error is not None:
                raise ValueError("completed jobs need result_pr and no error")
        elif self.status == JobStatus.FAILED:
            if not self.error or self.result_pr is not None:
                raise ValueError("failed jobs need an error and no result_pr")
        elif self.result_pr is not None or self.error is not None:
            raise ValueError(
                "result_pr and error may only be set with a terminal status"
            )
        return self


class JobRecord(BaseModel):
    """A job joined with its log, as returned by the store and the API."""

    model_config = ConfigDict(
        from_attributes=True, frozen=True, populate_by_name=True
    )

    id: str
    repository: str
    installation_id: int = Field(alias="installationId")
    source_pr: int = Field(alias="sourcePR")
    target_branch: str = Field(alias="targetBranch")
    requested_by: str = Field(alias="requestedBy")
    comment_id: int = Field(alias="commentId")
    status: JobStatus
    result_pr: int | None = Field(default=None, alias="resultPR")
    error: str | None = None
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    logs: tuple[str, ...] = ()

    @field_validator("created_at", "updated_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        # Some backends hand back naive datetimes; everything is stored in UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class JobListResponse(BaseModel):
    jobs: list[JobRecord]
