from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from clipforge.models.job import ClipRef, Job, MusicRef, OutputFormat, RenderRequest


class ClipInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # The web client sends "url"; other callers use "reference"
    reference: str = Field(validation_alias=AliasChoices("reference", "url"), min_length=1)
    order: float = 0
    start_time: float | None = Field(
        default=None, ge=0, validation_alias=AliasChoices("start_time", "startTime")
    )
    end_time: float | None = Field(
        default=None, gt=0, validation_alias=AliasChoices("end_time", "endTime")
    )


class MusicInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reference: str = Field(validation_alias=AliasChoices("reference", "url"), min_length=1)
    volume: float = Field(default=1.0, ge=0.0, le=2.0)


class RenderJobCreate(BaseModel):
    clips: list[ClipInput] = Field(min_length=1)
    music: MusicInput | None = None
    format: OutputFormat = OutputFormat.VERTICAL
    duration: float = Field(gt=0)

    @field_validator("format", mode="before")
    @classmethod
    def parse_format(cls, v):
        """Accept platform names (tiktok, reels, youtube) as well as vertical/horizontal."""
        if isinstance(v, str):
            try:
                return OutputFormat.parse(v)
            except ValueError:
                raise ValueError(
                    f"Unknown format '{v}' (expected vertical, horizontal, tiktok, reels or youtube)"
                )
        return v

    def to_request(self) -> RenderRequest:
        return RenderRequest(
            clips=tuple(
                ClipRef(
                    reference=clip.reference,
                    order=clip.order,
                    start_time=clip.start_time,
                    end_time=clip.end_time,
                )
                for clip in self.clips
            ),
            format=self.format,
            duration=self.duration,
            music=MusicRef(reference=self.music.reference, volume=self.music.volume) if self.music else None,
        )


class RenderJobCreated(BaseModel):
    job_id: str
    status: str


class RenderJobResponse(BaseModel):
    job_id: str
    status: str
    progress: int
    format: str
    duration: float
    clip_count: int
    has_music: bool
    output_url: str | None
    output_size: int | None
    output_duration_ms: int | None
    error_code: str | None
    error_detail: str | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_job(cls, job: Job) -> "RenderJobResponse":
        return cls.model_validate(job.to_dict())


class UploadResponse(BaseModel):
    url: str
    storage_key: str
