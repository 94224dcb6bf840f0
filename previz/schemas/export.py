from pydantic import BaseModel, ConfigDict, Field

from previz.schemas.timeline import TimelineSnapshot

EXPORT_FORMATS = ("mp4", "webm")
EXPORT_FPS = (24, 30, 60)
EXPORT_QUALITIES = ("low", "medium", "high")


class ExportSettings(BaseModel):
    """Export settings as chosen in the export dialog."""

    model_config = ConfigDict(populate_by_name=True)

    format: str = "mp4"  # mp4, webm
    resolution: str = "1920x1080"  # <width>x<height>
    fps: int = 24  # 24, 30, 60
    quality: str = "medium"  # low, medium, high
    # Export region in timeline seconds; None means timeline start / end
    start_time: float | None = Field(default=None, alias="startTime")
    end_time: float | None = Field(default=None, alias="endTime")


class ExportRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    snapshot: TimelineSnapshot
    settings: ExportSettings = Field(default_factory=ExportSettings)
    project_name: str | None = Field(default=None, alias="projectName")


class ExportStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(alias="runId")
    state: str
    progress: float
    error_message: str | None = Field(default=None, alias="errorMessage")
    filename: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")
    file_size: int | None = Field(default=None, alias="fileSize")


class ResolutionOption(BaseModel):
    label: str
    value: str
