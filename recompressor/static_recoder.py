"""
Static image recoder - re-encodes a still image as JPEG under a byte budget.

Each attempt decodes (at a power-of-2 subsample), orients and scales the
pixels, then encodes at the current quality. Attempts that miss the budget
hand over to the policy in ``policy.py`` for the next set of parameters.
"""

import logging
from dataclasses import replace
from io import BytesIO
from typing import Optional, Union

from PIL import Image

from .capacity import initial_subsample_factor
from .config import DEFAULT_CONFIG, RecodeConfig
from .errors import AttemptsExhausted, BudgetUnreachable, DecodeFailed, EncodeOutOfMemory
from .models import ImageSource, RecodeBudget, RecodeResult
from .orientation import OrientationTransform
from .policy import Action, RecodeParams, next_parameters

logger = logging.getLogger(__name__)


class RecodeState:
    """
    Working state of one recompression session.

    Owns at most one decoded and one scaled buffer. The scaled buffer may be
    the decoded buffer itself, in which case it is only closed once.
    """

    def __init__(self, params: RecodeParams):
        self.params = params
        self.decoded: Optional[Image.Image] = None
        self.scaled: Optional[Image.Image] = None

    def release_scaled(self) -> None:
        if self.scaled is not None and self.scaled is not self.decoded:
            self.scaled.close()
        self.scaled = None

    def release_decoded(self) -> None:
        self.release_scaled()
        if self.decoded is not None:
            self.decoded.close()
        self.decoded = None

    def release(self) -> None:
        self.release_decoded()

    def __enter__(self) -> 'RecodeState':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _flatten(img: Image.Image) -> Image.Image:
    """Convert to RGB, compositing any transparency onto white."""
    if img.mode in ('RGBA', 'LA') or (img.mode == 'P' and 'transparency' in img.info):
        rgba = img.convert('RGBA')
        background = Image.new('RGB', img.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel('A'))
        rgba.close()
        return background
    if img.mode != 'RGB':
        return img.convert('RGB')
    return img


def _drafted_scale(natural_width: int, drafted_width: int) -> int:
    """Power-of-two factor the JPEG draft applied; it rounds sizes up."""
    scale = 1
    while -(-natural_width // scale) > drafted_width:
        scale *= 2
    return scale


def decode_image(data: bytes, subsample: int = 1) -> Image.Image:
    """
    Decode ``data`` to an RGB image at 1/``subsample`` of its natural size.

    JPEG sources use the decoder's DCT scaling; whatever factor is left over
    is applied with ``Image.reduce``.

    Raises:
        DecodeFailed: the bytes are not a readable image
    """
    try:
        img = Image.open(BytesIO(data))
        natural_width = img.width
        if subsample > 1 and img.format == 'JPEG':
            img.draft(None, (max(1, img.width // subsample), max(1, img.height // subsample)))
        img.load()
        drafted = _drafted_scale(natural_width, img.width)

        # reduce() rejects palette and bilevel modes
        flat = _flatten(img)
        if flat is not img:
            img.close()

        remaining = min(subsample // drafted, max(flat.size))
        if remaining > 1:
            reduced = flat.reduce(remaining)
            flat.close()
            flat = reduced
        return flat
    except (OSError, EOFError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeFailed(f'Cannot decode image: {e}') from e


def minimum_scale_factor(width: int, height: int, width_limit: int, height_limit: int) -> float:
    """Smallest scale factor that brings width x height inside the limits (0 = unlimited)."""
    width_scale = width / width_limit if width_limit else 1.0
    height_scale = height / height_limit if height_limit else 1.0
    return max(width_scale, height_scale, 1.0)


def transform_image(decoded: Image.Image, orientation: OrientationTransform,
                    scale_factor: float) -> Image.Image:
    """
    Rotate, mirror, then shrink by ``scale_factor``.

    Returns ``decoded`` itself when the orientation is upright and there is
    nothing to shrink; callers must not close it twice.
    """
    img = decoded
    for step in orientation.transposes():
        turned = img.transpose(step)
        if img is not decoded:
            img.close()
        img = turned

    if scale_factor > 1.0:
        size = (max(1, round(img.width / scale_factor)),
                max(1, round(img.height / scale_factor)))
        resized = img.resize(size, Image.Resampling.LANCZOS)
        if img is not decoded:
            img.close()
        img = resized
    return img


def encode_jpeg(img: Image.Image, quality: int, oom_retries: int = 1) -> bytes:
    """
    Encode as baseline-optimized JPEG.

    Raises:
        EncodeOutOfMemory: every try ran out of memory
    """
    for _ in range(oom_retries + 1):
        try:
            buf = BytesIO()
            img.save(buf, format='JPEG', quality=quality, optimize=True)
            return buf.getvalue()
        except MemoryError:
            logger.warning('Out of memory converting image to JPEG bytes')

    raise EncodeOutOfMemory(f'Failed to encode {img.width}x{img.height} at quality {quality}')


class StaticImageRecoder:
    """Attempt loop for one still image against one budget."""

    def __init__(self, source: ImageSource, budget: RecodeBudget,
                 config: RecodeConfig = DEFAULT_CONFIG):
        self.source = source
        self.budget = budget
        self.config = config
        self.orientation = source.orientation

    def recode(self, start_quality: int) -> RecodeResult:
        if self.source.fits(self.budget.byte_limit, self.budget.width_limit, self.budget.height_limit):
            return RecodeResult(data=self.source.data)

        width, height = self.source.oriented_size
        try:
            subsample = initial_subsample_factor(
                width, height,
                self.budget.width_limit, self.budget.height_limit,
                self.budget.byte_limit, self.config.working_memory_bytes,
                self.config.max_target_scale_factor,
            )
        except BudgetUnreachable as e:
            return RecodeResult(error=e)

        best: Optional[bytes] = None
        out_of_memory = False
        attempts = 0
        with RecodeState(RecodeParams(start_quality, 1.0, subsample)) as state:
            for attempt in range(self.budget.max_attempts):
                attempts = attempt + 1
                try:
                    encoded = self._attempt(state, attempt)
                except DecodeFailed as e:
                    logger.warning(f'Decode failed, giving up: {e}')
                    return RecodeResult(error=e, attempts=attempts, best_effort=best)
                except (MemoryError, EncodeOutOfMemory):
                    logger.warning('Image too big for memory, will retry with adjusted parameters')
                    encoded = None

                out_of_memory = encoded is None
                size = len(encoded) if encoded is not None else 0
                if encoded is not None and (best is None or size < len(best)):
                    best = encoded

                if encoded is not None and size <= self.budget.byte_limit:
                    return RecodeResult(data=encoded, attempts=attempts)

                params, action = next_parameters(state.params, size, self.budget.byte_limit, self.config)
                logger.debug(f'Attempt {attempt}: {size} > {self.budget.byte_limit} bytes, {action.value}')
                if action is Action.GIVE_UP:
                    break
                if action.drops_decoded:
                    state.release_decoded()
                elif action.drops_scaled:
                    state.release_scaled()
                state.params = params

        logger.warning(
            f'Failed to compress image {len(self.source) // 1024}Kb to '
            f'{self.budget.byte_limit // 1024}Kb in {attempts} attempts'
        )
        if out_of_memory and best is None:
            error = EncodeOutOfMemory(f'Ran out of memory on every one of {attempts} attempts')
        else:
            error = AttemptsExhausted(
                f'Could not fit {self.budget.byte_limit} bytes in {attempts} attempts'
            )
        return RecodeResult(error=error, attempts=attempts, best_effort=best)

    def _attempt(self, state: RecodeState, attempt: int) -> bytes:
        params = state.params
        logger.debug(
            f'Recode attempt={attempt} limit (w={self.budget.width_limit} h={self.budget.height_limit}) '
            f'quality={params.quality} scale={params.scale_factor} subsample={params.subsample_factor}'
        )

        if state.scaled is None:
            if state.decoded is None:
                state.decoded = decode_image(self.source.data, params.subsample_factor)
                logger.debug(f'Decoded w,h={state.decoded.width},{state.decoded.height}')

            width, height = state.decoded.size
            if self.orientation.dimensions_swapped:
                width, height = height, width
            min_scale = minimum_scale_factor(width, height, self.budget.width_limit, self.budget.height_limit)
            if params.scale_factor < min_scale:
                params = state.params = replace(params, scale_factor=min_scale)

            state.scaled = transform_image(state.decoded, self.orientation, params.scale_factor)
            if state.scaled is not state.decoded:
                logger.debug(f'Scaled w,h={state.scaled.width},{state.scaled.height}')

        encoded = encode_jpeg(state.scaled, params.quality, self.config.encode_oom_retries)
        logger.debug(
            f'Encoded down to {len(encoded)}@{state.scaled.width}/{state.scaled.height}q{params.quality}'
        )
        return encoded


def recode_static_image(source: Union[bytes, ImageSource], width_limit: int, height_limit: int,
                        byte_limit: int, start_quality: Optional[int] = None,
                        max_attempts: Optional[int] = None,
                        config: Optional[RecodeConfig] = None) -> RecodeResult:
    """
    Re-encode a still image so it fits ``byte_limit`` and the dimension limits.

    Args:
        source: Image bytes or an ImageSource
        width_limit: Maximum output width, 0 for unlimited
        height_limit: Maximum output height, 0 for unlimited
        byte_limit: Output byte budget
        start_quality: JPEG quality of the first attempt (default from config)
        max_attempts: Attempt cap (default from config)
        config: Engine settings

    Returns:
        RecodeResult with the JPEG bytes, or the typed failure
    """
    config = config or DEFAULT_CONFIG
    if not isinstance(source, ImageSource):
        source = ImageSource(bytes(source))
    budget = RecodeBudget(byte_limit, width_limit, height_limit, max_attempts or config.max_attempts)

    try:
        recoder = StaticImageRecoder(source, budget, config)
        return recoder.recode(start_quality or config.default_quality)
    except DecodeFailed as e:
        logger.warning(f'Cannot recode image: {e}')
        return RecodeResult(error=e)
