"""
Attachment budget allocator.

Splits one message's byte budget between its attachments: non-image parts
are sent as they are, and whatever room is left is shared among the images
in proportion to their current size, each image being recompressed against
its share.
"""

import concurrent.futures
import logging
from dataclasses import replace
from typing import List, Optional, Sequence

from .animated_recoder import recode_animated_image
from .config import DEFAULT_CONFIG, RecodeConfig
from .models import Attachment, AttachmentPlan, AttachmentResult, RecodeResult, SendPlan
from .static_recoder import recode_static_image

logger = logging.getLogger(__name__)

DEFAULT_HEADROOM = 0.05


def image_budget(total_budget: int, attachments: Sequence[Attachment],
                 text: bytes = b'', headroom: float = DEFAULT_HEADROOM) -> int:
    """Bytes left for images once headroom, text and non-image parts are paid for."""
    if not 0.0 <= headroom < 1.0:
        raise ValueError(f'Headroom must be in [0, 1), got {headroom}')
    remaining = int(total_budget * (1.0 - headroom))
    remaining -= len(text)
    remaining -= sum(a.size for a in attachments if not a.is_image)
    return remaining


def proportional_split(remaining: int, sizes: Sequence[int]) -> List[int]:
    """
    Share ``remaining`` bytes in proportion to ``sizes``.

    Shares are floored, so they sum to at most ``remaining`` and fall short by
    fewer than ``len(sizes)`` bytes.
    """
    total = sum(sizes)
    if remaining <= 0 or total <= 0:
        return [0 for _ in sizes]
    return [remaining * size // total for size in sizes]


def plan_attachments(remaining: int, attachments: Sequence[Attachment]) -> List[AttachmentPlan]:
    """
    Build one plan per attachment.

    Non-image parts are allocated their own size. Images keep their size when
    they all fit in ``remaining`` together, otherwise they get a proportional
    share of it.
    """
    image_sizes = [a.size for a in attachments if a.is_image]
    if sum(image_sizes) <= remaining:
        shares = image_sizes
    else:
        shares = proportional_split(remaining, image_sizes)

    plans = []
    share_iter = iter(shares)
    for attachment in attachments:
        allocated = next(share_iter) if attachment.is_image else attachment.size
        plans.append(AttachmentPlan(
            attachment=attachment,
            allocated_bytes=allocated,
            is_image=attachment.is_image,
            is_gif=attachment.is_gif,
        ))
    return plans


def _recompress(plan: AttachmentPlan, width_limit: int, height_limit: int,
                config: RecodeConfig) -> RecodeResult:
    attachment = plan.attachment
    if plan.is_gif:
        return recode_animated_image(
            attachment.data, width_limit, height_limit, plan.allocated_bytes, config=config,
        )
    return recode_static_image(
        attachment.data, width_limit, height_limit, plan.allocated_bytes, config=config,
    )


def _finalize(plan: AttachmentPlan, result: Optional[RecodeResult]) -> AttachmentResult:
    """Pick the bytes to send; failed images go out at their smallest achieved size."""
    original = plan.attachment.data
    if result is None:
        return AttachmentResult(plan=plan, data=original)
    if result.ok:
        return AttachmentResult(plan=plan, data=result.data, recode=result)

    logger.warning(f'Failed to resize image {plan.attachment.name or "<unnamed>"}: {result.error}')
    data = original
    if result.best_effort is not None and len(result.best_effort) < len(original):
        data = result.best_effort
    return AttachmentResult(plan=plan, data=data, recode=result)


class AttachmentBudgetAllocator:
    """
    Drives every image of a message through the recoders.

    Args:
        width_limit: Maximum image width of the transport, 0 for unlimited
        height_limit: Maximum image height of the transport, 0 for unlimited
        headroom: Fraction of the total budget kept back for envelope overhead
        config: Engine settings
        redistribute: Re-derive each image's share from the bytes actually
            left after earlier images, instead of one proportional pass
        max_workers: Images recompressed at once in single-pass mode
    """

    def __init__(self, width_limit: int = 0, height_limit: int = 0,
                 headroom: float = DEFAULT_HEADROOM,
                 config: Optional[RecodeConfig] = None,
                 redistribute: bool = False, max_workers: int = 1):
        if max_workers < 1:
            raise ValueError('max_workers must be at least 1')
        self.width_limit = width_limit
        self.height_limit = height_limit
        self.headroom = headroom
        self.config = config or DEFAULT_CONFIG
        self.redistribute = redistribute
        self.max_workers = max_workers

    def allocate(self, total_budget: int, attachments: Sequence[Attachment],
                 text: Optional[str] = None) -> SendPlan:
        text_bytes = text.encode('utf-8') if text else b''
        remaining = image_budget(total_budget, attachments, text_bytes, self.headroom)
        logger.debug(f'{remaining} bytes left for images out of {total_budget}')

        if self.redistribute:
            parts = self._allocate_iteratively(remaining, attachments)
        else:
            parts = self._allocate_single_pass(remaining, attachments)
        return SendPlan(parts=parts, text=text_bytes)

    def _allocate_single_pass(self, remaining: int,
                              attachments: Sequence[Attachment]) -> List[AttachmentResult]:
        plans = plan_attachments(remaining, attachments)
        needs_work = [
            plan.is_image and plan.allocated_bytes < plan.attachment.size
            for plan in plans
        ]
        if not any(needs_work):
            return [_finalize(plan, None) for plan in plans]

        jobs = [plan for plan, work in zip(plans, needs_work) if work]
        workers = min(self.max_workers, len(jobs))
        results: List[Optional[RecodeResult]] = [None] * len(plans)

        if workers == 1:
            for index, plan in enumerate(plans):
                if needs_work[index]:
                    results[index] = _recompress(plan, self.width_limit, self.height_limit, self.config)
        else:
            # Concurrent sessions share the memory budget
            config = replace(self.config, working_memory_bytes=self.config.working_memory_bytes // workers)
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(_recompress, plan, self.width_limit, self.height_limit, config): index
                    for index, plan in enumerate(plans) if needs_work[index]
                }
                for future in concurrent.futures.as_completed(futures):
                    results[futures[future]] = future.result()

        return [_finalize(plan, result) for plan, result in zip(plans, results)]

    def _allocate_iteratively(self, remaining: int,
                              attachments: Sequence[Attachment]) -> List[AttachmentResult]:
        parts: List[AttachmentResult] = []
        pending = sum(a.size for a in attachments if a.is_image)
        for attachment in attachments:
            if not attachment.is_image:
                plan = AttachmentPlan(attachment, attachment.size, False, False)
                parts.append(_finalize(plan, None))
                continue

            if pending <= remaining:
                allocated = attachment.size
            else:
                allocated = proportional_split(remaining, [attachment.size, pending - attachment.size])[0]
            plan = AttachmentPlan(attachment, allocated, True, attachment.is_gif)

            result = None
            if allocated < attachment.size:
                result = _recompress(plan, self.width_limit, self.height_limit, self.config)
            part = _finalize(plan, result)
            parts.append(part)

            pending -= attachment.size
            remaining -= part.size
        return parts


def allocate_and_recompress(total_budget: int, attachments: Sequence[Attachment],
                            width_limit: int = 0, height_limit: int = 0,
                            text: Optional[str] = None,
                            headroom: float = DEFAULT_HEADROOM,
                            config: Optional[RecodeConfig] = None,
                            redistribute: bool = False,
                            max_workers: int = 1) -> SendPlan:
    """
    Fit a message's attachments into ``total_budget`` bytes.

    Per-image failures are reported on the matching part of the returned
    SendPlan; the other parts are unaffected.
    """
    allocator = AttachmentBudgetAllocator(
        width_limit, height_limit, headroom, config, redistribute, max_workers,
    )
    return allocator.allocate(total_budget, attachments, text)
