"""Resolution parsing and aspect-ratio presets."""

from previz.exceptions import InvalidResolutionError
from previz.schemas.export import ResolutionOption

# (width, label) presets offered for every aspect ratio
PRESET_WIDTHS: tuple[tuple[int, str], ...] = (
    (1920, "Full HD"),
    (1280, "HD"),
    (854, "SD"),
)

DEFAULT_ASPECT = 16 / 9


def parse_resolution(resolution: str, max_dimension: int = 1920) -> tuple[int, int]:
    """Parse ``"<width>x<height>"`` into two positive integers <= max_dimension."""
    parts = resolution.strip().lower().split("x")
    if len(parts) != 2:
        raise InvalidResolutionError(resolution, max_dimension)
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError:
        raise InvalidResolutionError(resolution, max_dimension) from None
    if not (1 <= width <= max_dimension and 1 <= height <= max_dimension):
        raise InvalidResolutionError(resolution, max_dimension)
    return width, height


def parse_aspect_ratio(
    aspect_ratio: str | None,
    custom_width: float | None = None,
    custom_height: float | None = None,
) -> float:
    """Turn a project aspect-ratio setting into width / height.

    ``"custom"`` uses the custom dimensions (16:9 when absent); ``"none"`` and
    anything unparseable fall back to 16:9.
    """
    if not aspect_ratio or aspect_ratio == "none":
        return DEFAULT_ASPECT
    if aspect_ratio == "custom":
        width = custom_width or 16
        height = custom_height or 9
        return width / height
    parts = aspect_ratio.split(":")
    if len(parts) != 2:
        return DEFAULT_ASPECT
    try:
        width, height = float(parts[0]), float(parts[1])
    except ValueError:
        return DEFAULT_ASPECT
    if width <= 0 or height <= 0:
        return DEFAULT_ASPECT
    return width / height


def default_resolutions(
    aspect_ratio: str | None = "16:9",
    custom_width: float | None = None,
    custom_height: float | None = None,
) -> list[ResolutionOption]:
    """Full HD / HD / SD presets that keep the project's aspect ratio."""
    aspect = parse_aspect_ratio(aspect_ratio, custom_width, custom_height)
    options = []
    for width, label in PRESET_WIDTHS:
        height = round(width / aspect)
        options.append(
            ResolutionOption(label=f"{width}x{height} ({label})", value=f"{width}x{height}")
        )
    return options
