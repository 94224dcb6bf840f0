from previz.schemas.export import (
    ExportRequest,
    ExportSettings,
    ExportStatusResponse,
    ResolutionOption,
)
from previz.schemas.timeline import ProjectImage, TimelineClip, TimelineSnapshot

__all__ = [
    "ExportRequest",
    "ExportSettings",
    "ExportStatusResponse",
    "ProjectImage",
    "ResolutionOption",
    "TimelineClip",
    "TimelineSnapshot",
]
