"""Initial subsample estimate, made once per image before anything is decoded."""

import logging

from .config import MAX_INITIAL_SUBSAMPLE
from .errors import BudgetUnreachable

logger = logging.getLogger(__name__)

DEFAULT_SLOP = 1.5


def pixel_limit(byte_limit: int, working_memory_bytes: int, slop: float = DEFAULT_SLOP) -> int:
    """
    Largest decoded pixel count worth holding in memory.

    Half of working memory goes to the 4 byte/pixel decode buffer (the other
    half to the scaled copy), hence 8 bytes per pixel. The final encode is
    assumed to reach at least 1 bit per pixel, so a budget of N bytes can
    never hold more than 8N pixels, give or take the slop on each axis.
    """
    working_memory_pixel_limit = working_memory_bytes // 8
    final_size_pixel_limit = int(byte_limit * 8 * slop * slop)
    return min(working_memory_pixel_limit, final_size_pixel_limit)


def _fits(width: int, height: int, width_limit: float, height_limit: float, pixels: int) -> bool:
    return height < height_limit and width < width_limit and height * width < pixels


def initial_subsample_factor(width: int, height: int,
                             width_limit: int, height_limit: int,
                             byte_limit: int, working_memory_bytes: int,
                             slop: float = DEFAULT_SLOP) -> int:
    """
    Pick the power-of-2 decode subsample for an image.

    Subsampling only kicks in when the image would still be too big after
    scaling by up to ``slop``, too big for working memory, or too big to ever
    compress into ``byte_limit``.

    Args:
        width: Natural image width
        height: Natural image height
        width_limit: Maximum output width, 0 for unlimited
        height_limit: Maximum output height, 0 for unlimited
        byte_limit: Output byte budget
        working_memory_bytes: Memory available for pixel buffers
        slop: How far over the limits a decode may be before halving it

    Returns:
        The subsample factor, a power of 2

    Raises:
        BudgetUnreachable: no factor below the overflow ceiling satisfies the limits
    """
    if byte_limit <= 0:
        raise BudgetUnreachable(f'Byte limit {byte_limit} leaves no room for an image')

    width_limit_with_slop = int(width_limit * slop) if width_limit else float('inf')
    height_limit_with_slop = int(height_limit * slop) if height_limit else float('inf')
    pixels = pixel_limit(byte_limit, working_memory_bytes, slop)

    factor = 1
    image_width, image_height = width, height
    while not _fits(image_width, image_height, width_limit_with_slop, height_limit_with_slop, pixels):
        factor *= 2
        if factor >= MAX_INITIAL_SUBSAMPLE:
            logger.warning(
                f'Cannot resize image: width_limit={width_limit} height_limit={height_limit} '
                f'byte_limit={byte_limit} image={width}x{height}'
            )
            raise BudgetUnreachable(
                f'{width}x{height} cannot be subsampled into {byte_limit} bytes'
            )
        image_width = width // factor
        image_height = height // factor
        logger.debug(
            f'Increasing subsample to {factor}: h={image_height} vs {height_limit_with_slop} '
            f'w={image_width} vs {width_limit_with_slop} p={image_width * image_height} vs {pixels}'
        )

    logger.debug(f'Initial subsample {factor} for {width}x{height}')
    return factor
