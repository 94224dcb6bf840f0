"""Timeline snapshot schemas.

The snapshot is produced by the editor's timeline and read once at export
start. Keys are accepted in the editor's camelCase form as well as snake_case.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

FileType = Literal["image", "video", "audio", "external"]

VISUAL_FILE_TYPES = ("image", "video")


class TimelineClip(BaseModel):
    """A single timeline entry."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    file_type: FileType | None = Field(default=None, alias="fileType")
    start_time: float = Field(default=0.0, alias="startTime", ge=0)
    end_time: float | None = Field(default=None, alias="endTime")
    duration: float | None = None

    # Source references, in lookup order
    image_url: str | None = Field(default=None, alias="imageUrl")
    file_url: str | None = Field(default=None, alias="fileUrl")
    thumbnail: str | None = None
    url: str | None = None

    # Seconds into the source where playback starts
    audio_start_offset: float = Field(default=0.0, alias="audioStartOffset", ge=0)

    file_name: str | None = Field(default=None, alias="fileName")
    is_external_file: bool = Field(default=False, alias="isExternalFile")
    track_id: str | None = Field(default=None, alias="trackId")

    # Storyboard-derived clips
    image_id: str | None = Field(default=None, alias="imageId")
    scene_number: str | int | None = Field(default=None, alias="sceneNumber")
    shot_number: str | int | None = Field(default=None, alias="shotNumber")
    frame_number: str | int | None = Field(default=None, alias="frameNumber")

    @model_validator(mode="after")
    def _resolve_end_time(self) -> "TimelineClip":
        if self.end_time is None:
            if self.duration is None:
                raise ValueError(f"Clip {self.id} needs endTime or duration")
            self.end_time = self.start_time + self.duration
        if self.end_time <= self.start_time:
            raise ValueError(
                f"Clip {self.id} must end after it starts "
                f"(startTime={self.start_time}, endTime={self.end_time})"
            )
        return self

    @property
    def is_visual(self) -> bool:
        """Image, video, or untyped storyboard clips are drawn into frames."""
        if self.file_type in VISUAL_FILE_TYPES:
            return True
        return self.file_type is None and not self.is_external_file

    @property
    def is_audio(self) -> bool:
        return self.file_type == "audio"

    def intersects(self, start: float, end: float) -> bool:
        """True when [start_time, end_time) overlaps [start, end)."""
        return self.start_time < end and self.end_time > start


class ProjectImage(BaseModel):
    """An image in the storyboard project, used to resolve storyboard clips."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str | None = None
    url: str | None = None
    composite_url: str | None = Field(default=None, alias="compositeUrl")
    scene_number: str | int | None = Field(default=None, alias="sceneNumber")
    shot_number: str | int | None = Field(default=None, alias="shotNumber")
    frame_number: str | int | None = Field(default=None, alias="frameNumber")

    @property
    def best_url(self) -> str | None:
        """Edited composite first, original upload second."""
        return self.composite_url or self.url


class TimelineSnapshot(BaseModel):
    """Timeline data as handed to the export pipeline."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    project_name: str | None = Field(default=None, alias="projectName")
    frame_rate: int = Field(default=24, alias="frameRate", gt=0)
    timeline: list[TimelineClip] = Field(default_factory=list)
    images: list[ProjectImage] = Field(default_factory=list)

    @property
    def duration(self) -> float:
        """Latest end time of any clip (visual or audio); 0 when empty."""
        if not self.timeline:
            return 0.0
        return max(clip.end_time for clip in self.timeline)

    def sorted_clips(self) -> list[TimelineClip]:
        """Clips ordered by start time; equal starts keep snapshot order."""
        return sorted(self.timeline, key=lambda c: c.start_time)

    def find_project_image(self, clip: TimelineClip) -> ProjectImage | None:
        """Look up the storyboard image behind a clip by id or scene/shot/frame."""
        for image in self.images:
            if clip.image_id is not None and image.name == clip.image_id:
                return image
            if (
                clip.scene_number is not None
                and image.scene_number == clip.scene_number
                and image.shot_number == clip.shot_number
                and image.frame_number == clip.frame_number
            ):
                return image
        return None
