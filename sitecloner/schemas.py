from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    routes: Optional[List[str]] = None
    wait_until: Optional[str] = Field(default=None, alias="waitUntil")
    extra_wait_ms: Optional[float] = Field(default=None, alias="extraWaitMs")
    download_external: bool = Field(default=False, alias="downloadExternal")
    max_wait_ms: Optional[float] = Field(default=None, alias="maxWaitMs")
    auto_scroll: bool = Field(default=False, alias="autoScroll")
    block_trackers: bool = Field(default=False, alias="blockTrackers")


class CreateJobRequest(BaseModel):
    url: str = ""
    options: JobOptions = Field(default_factory=JobOptions)


class CreateJobResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")


class ProgressModel(BaseModel):
    stage: str
    message: str
    assets: int = 0


class JobStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: str
    url: str
    created_at: int = Field(alias="createdAt")
    updated_at: int = Field(alias="updatedAt")
    progress: ProgressModel
    error: Optional[str] = None
    download_url: Optional[str] = Field(default=None, alias="downloadUrl")
