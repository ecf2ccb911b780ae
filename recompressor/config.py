"""Tuning constants for the recompression engine."""

from dataclasses import dataclass

# Largest value of a signed 32-bit integer, the range subsample factors must stay in
INT_MAX = 2 ** 31 - 1

# Subsample factors at or above this are rejected up front; the attempt loop may
# still double the factor once more without leaving the 32-bit range.
MAX_INITIAL_SUBSAMPLE = INT_MAX // 4

# The attempt loop never doubles past this.
MAX_SUBSAMPLE = INT_MAX // 2

GIF_MIME = 'image/gif'


@dataclass(frozen=True)
class RecodeConfig:
    """
    Engine settings shared by the static and animated recoders.

    Attributes:
        default_quality: JPEG quality used for the first attempt and after every
            scale or subsample change
        min_quality: Quality floor; below it the engine shrinks pixels instead
        quality_step_ratio: Largest single-round quality cut (0.85 = at most 15%)
        min_scale_down_ratio: Per-round shrink ratio used by scale reduction
        max_target_scale_factor: Slop allowed over the limits before subsampling
        max_attempts: Attempts per recompression call
        encode_oom_retries: Extra encode tries after a MemoryError
        gif_size_margin: Fraction of the budget targeted by each GIF attempt
        working_memory_bytes: Memory available for one session's pixel buffers
    """
    default_quality: int = 95
    min_quality: int = 50
    quality_step_ratio: float = 0.85
    min_scale_down_ratio: float = 0.75
    max_target_scale_factor: float = 1.5
    max_attempts: int = 6
    encode_oom_retries: int = 1
    gif_size_margin: float = 0.95
    working_memory_bytes: int = 64 * 1024 * 1024


DEFAULT_CONFIG = RecodeConfig()
