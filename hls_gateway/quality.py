"""Quality ladder presets and master playlist synthesis."""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

LEVEL_PATTERN = re.compile(r"^(\d{2,4})p$")


@dataclass(frozen=True)
class QualityPreset:
    """One rung of the encoding ladder."""

    name: str
    width: int
    height: int
    bandwidth: int

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


# Bandwidth is video + audio bitrate of the encoder preset
QUALITY_PRESETS: tuple[QualityPreset, ...] = (
    QualityPreset("1080p", 1920, 1080, 5128000),
    QualityPreset("720p", 1280, 720, 2928000),
    QualityPreset("480p", 854, 480, 1496000),
    QualityPreset("360p", 640, 360, 896000),
)
PRESETS_BY_NAME = {preset.name: preset for preset in QUALITY_PRESETS}


def level_height(level: str) -> Optional[int]:
    """Height of a `{height}p` label, or None for anything else."""
    match = LEVEL_PATTERN.match(level)
    return int(match.group(1)) if match else None


def select_quality_levels(source_height: int) -> list[str]:
    """
    Levels the encoder produces for a source of the given height.

    Only standard presets at or below the source height are produced, so a
    540p source gets 480p and 360p rather than a native 540p rendition.
    Sources below 360p get no adaptive ladder.
    """
    return [preset.name for preset in QUALITY_PRESETS if preset.height <= source_height]


def variant_attributes(level: str) -> QualityPreset:
    """
    Stream attributes for a level.

    Standard levels use their preset. Other `{height}p` labels recorded in
    metadata (e.g. 540p from older encodes) are kept with estimated values:
    16:9 width rounded down to even, bandwidth of the preset tier at or below.
    """
    preset = PRESETS_BY_NAME.get(level)
    if preset:
        return preset

    height = level_height(level)
    if height is None:
        return QualityPreset(level, 640, 360, 1000000)

    width = round(height * 16 / 9)
    if width % 2:
        width -= 1

    bandwidth = QUALITY_PRESETS[-1].bandwidth
    for tier in QUALITY_PRESETS:
        if height >= tier.height:
            bandwidth = tier.bandwidth
            break
    return QualityPreset(level, width, height, bandwidth)


def sort_levels(levels: Iterable[str]) -> list[str]:
    """Highest resolution first; unknown labels last, in input order."""
    unique = list(dict.fromkeys(levels))
    return sorted(unique, key=lambda level: -(level_height(level) or 0))


def build_master_playlist(levels: Iterable[str]) -> str:
    """Master playlist with one `#EXT-X-STREAM-INF` entry per level, highest first."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for level in sort_levels(levels):
        attributes = variant_attributes(level)
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={attributes.bandwidth},RESOLUTION={attributes.resolution}"
        )
        lines.append(f"{level}.m3u8")
    return "\n".join(lines) + "\n"
