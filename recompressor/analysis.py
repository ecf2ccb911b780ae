"""Image statistics shown in the command-line reports."""

from io import BytesIO
from typing import Dict, Optional

import numpy as np
from PIL import Image


def calculate_entropy(img: Image.Image) -> float:
    """Shannon entropy of the grayscale histogram, in bits (0-8)."""
    gray_img = img if img.mode == 'L' else img.convert('L')
    hist = np.asarray(gray_img.histogram(), dtype=np.float64)
    hist = hist[hist > 0]
    if hist.size == 0:
        return 0.0
    p = hist / hist.sum()
    return float(-np.sum(p * np.log2(p)))


def describe_image(data: bytes) -> Optional[Dict]:
    """
    Summarize encoded image bytes.

    Returns:
        Dictionary with format, size, megapixels, frame count and entropy, or
        None when the bytes are not an image
    """
    try:
        with Image.open(BytesIO(data)) as img:
            analysis = {
                'format': img.format,
                'mode': img.mode,
                'width': img.width,
                'height': img.height,
                'megapixels': (img.width * img.height) / 1_000_000,
                'frames': getattr(img, 'n_frames', 1),
                'bytes': len(data),
            }
            analysis['entropy'] = calculate_entropy(img)
            return analysis
    except (OSError, EOFError, SyntaxError, ValueError, Image.DecompressionBombError):
        return None
