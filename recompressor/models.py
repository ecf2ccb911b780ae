"""Data passed in and out of the recompression engine."""

from dataclasses import dataclass, field
from functools import cached_property
from io import BytesIO
from typing import List, Optional, Tuple

from PIL import Image

from .config import GIF_MIME
from .errors import DecodeFailed, EnvelopeTooLarge, RecodeError
from .orientation import OrientationTransform, orientation_for_code, read_orientation_code


@dataclass(frozen=True)
class ImageSource:
    """Immutable source bytes with dimensions and orientation read on first use."""
    data: bytes

    def __len__(self) -> int:
        return len(self.data)

    @cached_property
    def _header(self) -> Tuple[int, int, Optional[str], int]:
        try:
            with Image.open(BytesIO(self.data)) as img:
                return img.width, img.height, img.format, getattr(img, 'n_frames', 1)
        except (OSError, EOFError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
            raise DecodeFailed(f'Cannot read image header: {e}') from e

    @property
    def width(self) -> int:
        return self._header[0]

    @property
    def height(self) -> int:
        return self._header[1]

    @property
    def format(self) -> Optional[str]:
        return self._header[2]

    @property
    def frame_count(self) -> int:
        return self._header[3]

    @cached_property
    def orientation_code(self) -> int:
        return read_orientation_code(self.data)

    @property
    def orientation(self) -> OrientationTransform:
        return orientation_for_code(self.orientation_code)

    @property
    def oriented_size(self) -> Tuple[int, int]:
        """Width and height once the orientation transform is applied."""
        if self.orientation.dimensions_swapped:
            return self.height, self.width
        return self.width, self.height

    def fits(self, byte_limit: int, width_limit: int, height_limit: int) -> bool:
        """True when the bytes can be sent as they are."""
        if len(self.data) > byte_limit:
            return False
        width, height = self.oriented_size
        if width_limit and width > width_limit:
            return False
        if height_limit and height > height_limit:
            return False
        return True


@dataclass(frozen=True)
class RecodeBudget:
    byte_limit: int
    width_limit: int
    height_limit: int
    max_attempts: int = 6

    def __post_init__(self):
        if self.width_limit < 0 or self.height_limit < 0:
            raise ValueError('Dimension limits must not be negative')
        if self.max_attempts < 1:
            raise ValueError('At least one attempt is required')


@dataclass
class RecodeResult:
    """
    Outcome of one recompression call.

    Exactly one of ``data`` and ``error`` is set. On failure ``best_effort``
    holds the smallest output produced along the way, if any.
    """
    data: Optional[bytes] = None
    error: Optional[RecodeError] = None
    attempts: int = 0
    best_effort: Optional[bytes] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.data is not None

    def raise_for_error(self) -> bytes:
        if self.error is not None:
            raise self.error
        return self.data


@dataclass(frozen=True)
class Attachment:
    data: bytes
    mime: str
    name: str = ''
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        return self.mime.lower().startswith('image/')

    @property
    def is_gif(self) -> bool:
        return self.mime.lower() == GIF_MIME


@dataclass
class AttachmentPlan:
    attachment: Attachment
    allocated_bytes: int
    is_image: bool
    is_gif: bool


@dataclass
class AttachmentResult:
    """Final bytes chosen for one attachment and how they were obtained."""
    plan: AttachmentPlan
    data: bytes
    recode: Optional[RecodeResult] = None

    @property
    def recompressed(self) -> bool:
        return self.recode is not None and self.recode.ok

    @property
    def error(self) -> Optional[RecodeError]:
        return self.recode.error if self.recode is not None else None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class SendPlan:
    """All parts of one outgoing message, in attachment order."""
    parts: List[AttachmentResult] = field(default_factory=list)
    text: bytes = b''

    @property
    def total_bytes(self) -> int:
        return len(self.text) + sum(part.size for part in self.parts)

    @property
    def failures(self) -> List[AttachmentResult]:
        return [part for part in self.parts if part.error is not None]

    def check_ceiling(self, ceiling: int) -> None:
        """Raise EnvelopeTooLarge when the message cannot be sent as planned."""
        if self.total_bytes > ceiling:
            raise EnvelopeTooLarge(self.total_bytes, ceiling)
