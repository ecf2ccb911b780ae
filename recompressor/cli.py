"""
Message Budget Compressor - fits a set of attachments into one size-capped message
"""

import argparse
import logging
import mimetypes
import os
from typing import List, Optional, Set

from .allocator import DEFAULT_HEADROOM, AttachmentBudgetAllocator
from .analysis import describe_image
from .config import RecodeConfig
from .errors import EnvelopeTooLarge
from .models import Attachment, AttachmentResult, SendPlan


def load_attachments(paths: List[str]) -> List[Attachment]:
    """Read each file and guess its MIME type from the extension."""
    attachments = []
    for path in paths:
        mime, _ = mimetypes.guess_type(path)
        with open(path, 'rb') as f:
            data = f.read()
        attachments.append(Attachment(
            data=data,
            mime=mime or 'application/octet-stream',
            name=os.path.basename(path),
        ))
    return attachments


def output_name(part: AttachmentResult) -> str:
    """Recoded still images become JPEG; everything else keeps its name."""
    attachment = part.plan.attachment
    if part.data == attachment.data or part.plan.is_gif:
        return attachment.name
    return os.path.splitext(attachment.name)[0] + '.jpg'


def _unique_name(name: str, taken: Set[str]) -> str:
    """Append -1, -2, ... to the stem until the name is free."""
    stem, ext = os.path.splitext(name)
    candidate = name
    index = 1
    while candidate in taken:
        candidate = f"{stem}-{index}{ext}"
        index += 1
    taken.add(candidate)
    return candidate


def write_parts(plan: SendPlan, output_dir: str) -> List[str]:
    written = []
    taken: Set[str] = set()
    for part in plan.parts:
        output_path = os.path.join(output_dir, _unique_name(output_name(part), taken))
        with open(output_path, 'wb') as f:
            f.write(part.data)
        written.append(output_path)
    return written


def _print_part_summary(part: AttachmentResult) -> None:
    attachment = part.plan.attachment
    original_kb = attachment.size / 1024.0
    new_kb = part.size / 1024.0

    print(f"\n📄 {attachment.name} ({attachment.mime})")
    if not part.plan.is_image:
        print(f"   Sent as is: {original_kb:.1f}KB")
        return

    print(f"   Allocated: {part.plan.allocated_bytes / 1024.0:.1f}KB")
    if part.recode is None:
        print(f"   ⏭️  Already fits: {original_kb:.1f}KB")
    elif part.recompressed:
        print(f"   ✅ {original_kb:.1f}KB → {new_kb:.1f}KB in {part.recode.attempts} attempt(s)")
    else:
        print(f"   ❌ {type(part.error).__name__}: {part.error}")
        print(f"   Best effort: {new_kb:.1f}KB")

    analysis = describe_image(part.data)
    if analysis:
        print(f"   Result: {analysis['format']} {analysis['width']}x{analysis['height']} "
              f"({analysis['megapixels']:.1f} MP, {analysis['frames']} frame(s))")
        print(f"   Complexity: {analysis['entropy']:.1f}/8 bits")


def print_summary(plan: SendPlan, total_budget: int) -> None:
    print(f"\n{'='*60}")
    print("📨 MESSAGE SUMMARY")
    print(f"{'='*60}")
    for part in plan.parts:
        _print_part_summary(part)

    original_total = len(plan.text) + sum(p.plan.attachment.size for p in plan.parts)
    print(f"\n{'-'*40}")
    print(f"💾 Total size: {original_total / 1024.0:.1f}KB → {plan.total_bytes / 1024.0:.1f}KB")
    print(f"🎯 Budget: {total_budget / 1024.0:.1f}KB")
    print(f"❌ Failures: {len(plan.failures)}")
    print(f"{'='*60}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='recompressor',
        description='Fit attachments into one size-capped message, recompressing images as needed',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s photo.jpg clip.gif -o out --budget-kb 300
  %(prog)s a.jpg b.png -o out --budget-kb 600 --max-width 1280 --max-height 1280
  %(prog)s a.jpg notes.pdf -o out --budget-kb 1024 --text "see attached" --redistribute
        """
    )

    parser.add_argument('files', nargs='+', help='Attachment files, in message order')
    parser.add_argument('-o', '--output-dir', required=True,
                        help='Directory to write the message parts to')
    parser.add_argument('--budget-kb', type=float, required=True,
                        help='Total message size in KB (e.g., 300 for 300KB)')
    parser.add_argument('--max-width', type=int, default=0,
                        help='Maximum image width in pixels (0 = unlimited)')
    parser.add_argument('--max-height', type=int, default=0,
                        help='Maximum image height in pixels (0 = unlimited)')
    parser.add_argument('--text', default=None,
                        help='Message text, counted against the budget')
    parser.add_argument('--headroom', type=float, default=DEFAULT_HEADROOM,
                        help='Fraction of the budget kept back for overhead (default 0.05)')
    parser.add_argument('--memory-mb', type=int, default=None,
                        help='Working memory for pixel buffers in MB')
    parser.add_argument('--workers', type=int, default=1,
                        help='Images to recompress in parallel')
    parser.add_argument('--redistribute', action='store_true',
                        help='Give bytes saved on one image to the images after it')
    parser.add_argument('--ceiling-kb', type=float, default=None,
                        help='Hard message size limit; refuse to write above it')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log every recompression attempt')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function with command line interface."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    # Validate input
    for path in args.files:
        if not os.path.isfile(path):
            print(f"Error: Attachment '{path}' does not exist")
            return 1

    if args.budget_kb <= 0:
        print("Error: Budget must be positive")
        return 1

    if args.max_width < 0 or args.max_height < 0:
        print("Error: Max width and height must not be negative")
        return 1

    if not 0.0 <= args.headroom < 1.0:
        print("Error: Headroom must be between 0 and 1")
        return 1

    if args.workers < 1:
        print("Error: Workers must be at least 1")
        return 1

    config = RecodeConfig()
    if args.memory_mb:
        config = RecodeConfig(working_memory_bytes=args.memory_mb * 1024 * 1024)

    total_budget = int(args.budget_kb * 1024)
    allocator = AttachmentBudgetAllocator(
        width_limit=args.max_width,
        height_limit=args.max_height,
        headroom=args.headroom,
        config=config,
        redistribute=args.redistribute,
        max_workers=args.workers,
    )
    plan = allocator.allocate(total_budget, load_attachments(args.files), args.text)

    print_summary(plan, total_budget)

    if args.ceiling_kb is not None:
        try:
            plan.check_ceiling(int(args.ceiling_kb * 1024))
        except EnvelopeTooLarge as e:
            print(f"Error: {e}")
            return 1

    os.makedirs(args.output_dir, exist_ok=True)
    for path in write_parts(plan, args.output_dir):
        print(f"📁 Wrote {path}")
    return 0
