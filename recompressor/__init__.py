"""Budget-driven image recompression for size-capped messages."""

from .allocator import AttachmentBudgetAllocator, allocate_and_recompress
from .animated_recoder import recode_animated_image
from .config import RecodeConfig
from .errors import (
    AttemptsExhausted,
    BudgetUnreachable,
    DecodeFailed,
    EncodeOutOfMemory,
    EnvelopeTooLarge,
    RecodeError,
)
from .models import Attachment, AttachmentPlan, AttachmentResult, ImageSource, RecodeResult, SendPlan
from .orientation import OrientationTransform, resolve_orientation
from .static_recoder import recode_static_image

__all__ = [
    'Attachment',
    'AttachmentBudgetAllocator',
    'AttachmentPlan',
    'AttachmentResult',
    'AttemptsExhausted',
    'BudgetUnreachable',
    'DecodeFailed',
    'EncodeOutOfMemory',
    'EnvelopeTooLarge',
    'ImageSource',
    'OrientationTransform',
    'RecodeConfig',
    'RecodeError',
    'RecodeResult',
    'SendPlan',
    'allocate_and_recompress',
    'recode_animated_image',
    'recode_static_image',
    'resolve_orientation',
]
