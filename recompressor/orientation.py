"""
Orientation handling - turns the EXIF orientation tag into a transform that
makes the re-encoded image display upright without the tag.
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, List

from PIL import Image

logger = logging.getLogger(__name__)

ORIENTATION_TAG = 274


@dataclass(frozen=True)
class OrientationTransform:
    """Clockwise rotation followed by an optional mirror on each axis."""
    rotation_degrees: int = 0
    mirror_x: int = 1
    mirror_y: int = 1
    dimensions_swapped: bool = False

    @property
    def is_identity(self) -> bool:
        return self.rotation_degrees == 0 and self.mirror_x == 1 and self.mirror_y == 1

    def transposes(self) -> List[Image.Transpose]:
        """Pillow transpose operations that apply this transform, in order."""
        steps = []
        # Pillow's ROTATE_* constants turn counter-clockwise
        if self.rotation_degrees == 90:
            steps.append(Image.Transpose.ROTATE_270)
        elif self.rotation_degrees == 180:
            steps.append(Image.Transpose.ROTATE_180)
        elif self.rotation_degrees == 270:
            steps.append(Image.Transpose.ROTATE_90)
        if self.mirror_x == -1:
            steps.append(Image.Transpose.FLIP_LEFT_RIGHT)
        if self.mirror_y == -1:
            steps.append(Image.Transpose.FLIP_TOP_BOTTOM)
        return steps

    def apply(self, img: Image.Image) -> Image.Image:
        for step in self.transposes():
            img = img.transpose(step)
        return img


IDENTITY = OrientationTransform()

_TRANSFORMS: Dict[int, OrientationTransform] = {
    1: IDENTITY,
    2: OrientationTransform(mirror_x=-1),
    3: OrientationTransform(rotation_degrees=180),
    4: OrientationTransform(mirror_y=-1),
    5: OrientationTransform(rotation_degrees=90, mirror_x=-1, dimensions_swapped=True),
    6: OrientationTransform(rotation_degrees=90, dimensions_swapped=True),
    7: OrientationTransform(rotation_degrees=270, mirror_x=-1, dimensions_swapped=True),
    8: OrientationTransform(rotation_degrees=270, dimensions_swapped=True),
}


def orientation_for_code(code) -> OrientationTransform:
    """Map an EXIF orientation value to its transform; unknown values are identity."""
    try:
        return _TRANSFORMS.get(int(code), IDENTITY)
    except (TypeError, ValueError):
        return IDENTITY


def read_orientation_code(data: bytes) -> int:
    """Read the raw EXIF orientation value, 0 when absent or unreadable."""
    try:
        with Image.open(BytesIO(data)) as img:
            return int(img.getexif().get(ORIENTATION_TAG, 0))
    except Exception as e:
        # Missing or broken metadata is normal for screenshots, GIFs, PNGs...
        logger.debug(f'No readable orientation tag: {e}')
        return 0


def resolve_orientation(data: bytes) -> OrientationTransform:
    """Derive the upright transform for raw image bytes."""
    return orientation_for_code(read_orientation_code(data))
