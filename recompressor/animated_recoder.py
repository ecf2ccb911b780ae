"""
Animated GIF recoder.

GIF has no quality knob worth turning, so the only lever is pixel size: each
attempt estimates new dimensions from how far the last output overshot the
budget and re-renders every frame from the original bytes.
"""

import logging
import math
from io import BytesIO
from typing import List, Optional, Tuple, Union

from PIL import Image, ImageSequence

from .config import DEFAULT_CONFIG, RecodeConfig
from .errors import AttemptsExhausted, DecodeFailed
from .models import ImageSource, RecodeBudget, RecodeResult

logger = logging.getLogger(__name__)


def next_gif_dimensions(width: int, height: int, aspect_ratio: float,
                        byte_limit: int, current_size: int,
                        margin: float = 0.95) -> Tuple[int, int]:
    """
    Estimate target dimensions for the next attempt.

    Output size is taken as proportional to pixel area, aiming a little under
    the budget (``margin``).
    """
    scale = (byte_limit / current_size) * margin
    new_width = max(1, int(math.sqrt(scale * width * height * aspect_ratio)))
    new_height = max(1, int(new_width / aspect_ratio))
    return new_width, new_height


def _fit_inside(width: int, height: int, box_width: int, box_height: int) -> Tuple[int, int]:
    """Largest size with the same aspect ratio that fits the box, never upscaled."""
    ratio = min(box_width / width, box_height / height, 1.0)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def render_gif(data: bytes, box_width: int, box_height: int) -> bytes:
    """
    Resample every frame of ``data`` to fit inside the box and re-encode.

    Raises:
        DecodeFailed: the bytes are not a readable image
    """
    try:
        with Image.open(BytesIO(data)) as img:
            size = _fit_inside(img.width, img.height, box_width, box_height)
            loop = img.info.get('loop', 0)
            frames: List[Image.Image] = []
            durations: List[int] = []
            for frame in ImageSequence.Iterator(img):
                durations.append(frame.info.get('duration', img.info.get('duration', 100)))
                frames.append(frame.convert('RGBA').resize(size, Image.Resampling.LANCZOS))
    except (OSError, EOFError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeFailed(f'Cannot decode GIF: {e}') from e

    try:
        buf = BytesIO()
        save_params = {
            'format': 'GIF',
            'save_all': True,
            'append_images': frames[1:],
            'duration': durations if len(durations) > 1 else durations[0],
            'loop': loop,
            'disposal': 2,
            'optimize': False,
        }
        frames[0].save(buf, **save_params)
        return buf.getvalue()
    finally:
        for frame in frames:
            frame.close()


class AnimatedImageRecoder:
    """Attempt loop for one GIF against one budget."""

    def __init__(self, source: ImageSource, budget: RecodeBudget,
                 config: RecodeConfig = DEFAULT_CONFIG):
        self.source = source
        self.budget = budget
        self.config = config

    def recode(self) -> RecodeResult:
        width, height = self.source.width, self.source.height
        if self.source.fits(self.budget.byte_limit, self.budget.width_limit, self.budget.height_limit):
            return RecodeResult(data=self.source.data)
        if self.budget.byte_limit <= 0:
            return RecodeResult(error=AttemptsExhausted('No bytes left for the GIF'))

        max_width, max_height = _fit_inside(
            width, height,
            self.budget.width_limit or width, self.budget.height_limit or height,
        )
        new_width, new_height = max_width, max_height
        aspect_ratio = width / height

        scaled = self.source.data
        best: Optional[bytes] = None
        attempts = 0
        for attempt in range(self.budget.max_attempts):
            attempts = attempt + 1
            new_width, new_height = next_gif_dimensions(
                new_width, new_height, aspect_ratio,
                self.budget.byte_limit, len(scaled), self.config.gif_size_margin,
            )
            new_width, new_height = min(new_width, max_width), min(new_height, max_height)
            try:
                # Always start again from the original frames
                scaled = render_gif(self.source.data, new_width, new_height)
            except DecodeFailed as e:
                logger.warning(f'GIF decode failed, giving up: {e}')
                return RecodeResult(error=e, attempts=attempts, best_effort=best)

            logger.debug(
                f'Gif compression attempt {attempt}: {len(scaled) // 1024}/'
                f'{self.budget.byte_limit // 1024}Kb ({width}*{height} -> {new_width}*{new_height})'
            )
            if best is None or len(scaled) < len(best):
                best = scaled
            if len(scaled) <= self.budget.byte_limit:
                return RecodeResult(data=scaled, attempts=attempts)

        logger.warning(
            f'Failed to compress Gif {len(self.source) // 1024}Kb to {self.budget.byte_limit // 1024}Kb'
        )
        return RecodeResult(
            error=AttemptsExhausted(f'GIF did not fit {self.budget.byte_limit} bytes in {attempts} attempts'),
            attempts=attempts,
            best_effort=best,
        )


def recode_animated_image(source: Union[bytes, ImageSource], width_limit: int, height_limit: int,
                          byte_limit: int, max_attempts: Optional[int] = None,
                          config: Optional[RecodeConfig] = None) -> RecodeResult:
    """
    Shrink an animated GIF until it fits ``byte_limit`` and the dimension limits.

    Returns:
        RecodeResult with the GIF bytes, or the typed failure
    """
    config = config or DEFAULT_CONFIG
    if not isinstance(source, ImageSource):
        source = ImageSource(bytes(source))
    budget = RecodeBudget(byte_limit, width_limit, height_limit, max_attempts or config.max_attempts)

    try:
        return AnimatedImageRecoder(source, budget, config).recode()
    except DecodeFailed as e:
        logger.warning(f'Cannot recode GIF: {e}')
        return RecodeResult(error=e)
