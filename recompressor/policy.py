"""
Recode parameter policy - decides what the next attempt changes after an
attempt came out too big (or produced nothing).

Cheapest lever first: quality (no re-decode), then scale (reuses the decoded
pixels), then subsampling (full re-decode at a coarser grid).
"""

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Tuple

from .config import DEFAULT_CONFIG, MAX_SUBSAMPLE, RecodeConfig


class Action(Enum):
    REDUCE_QUALITY = 'reduce_quality'
    REDUCE_SCALE = 'reduce_scale'
    RETRY_IDENTICAL = 'retry_identical'
    RESUBSAMPLE = 'resubsample'
    GIVE_UP = 'give_up'

    @property
    def drops_scaled(self) -> bool:
        return self in (Action.REDUCE_SCALE, Action.RESUBSAMPLE)

    @property
    def drops_decoded(self) -> bool:
        return self is Action.RESUBSAMPLE


@dataclass(frozen=True)
class RecodeParams:
    quality: int
    scale_factor: float = 1.0
    subsample_factor: int = 1


def next_parameters(params: RecodeParams, last_size: int, byte_limit: int,
                    config: RecodeConfig = DEFAULT_CONFIG) -> Tuple[RecodeParams, Action]:
    """
    Choose the parameters for the next attempt.

    Args:
        params: Parameters of the attempt that just missed the budget
        last_size: Bytes that attempt produced, 0 if it produced nothing
        byte_limit: Output byte budget
        config: Engine settings

    Returns:
        (next parameters, action taken)
    """
    ratio = config.min_scale_down_ratio

    if last_size > 0 and params.quality > config.min_quality:
        # DCT encoders shrink roughly with the square of quality
        quality = max(
            config.min_quality,
            min(int(params.quality * math.sqrt(byte_limit / last_size)),
                int(params.quality * config.quality_step_ratio)),
        )
        return replace(params, quality=quality), Action.REDUCE_QUALITY

    if last_size > 0 and params.scale_factor < 2.0 * ratio * ratio:
        # Stay well short of the next subsample step
        return replace(
            params,
            quality=config.default_quality,
            scale_factor=params.scale_factor / ratio,
        ), Action.REDUCE_SCALE

    if last_size <= 0:
        # Usually a MemoryError; the buffers released since may be enough
        return params, Action.RETRY_IDENTICAL

    subsample = params.subsample_factor * 2
    if subsample > MAX_SUBSAMPLE:
        return params, Action.GIVE_UP
    return RecodeParams(
        quality=config.default_quality,
        scale_factor=1.0,
        subsample_factor=subsample,
    ), Action.RESUBSAMPLE
