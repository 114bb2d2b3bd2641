from dataclasses import dataclass
from typing import Tuple

import numpy as np


@dataclass(frozen=True)
class LetterboxInfo:
    """
    How an image was placed inside the network input.

    ratio: scale applied to both axes (min of the two axis ratios)
    pad: (x, y) offset of the resized image inside the padded input
    resized: (width, height) of the resized image before padding
    """

    ratio: float
    pad: Tuple[int, int]
    resized: Tuple[int, int]


def letterbox(
    image: np.ndarray,
    new_shape: Tuple[int, int] = (608, 608),
    color: Tuple[int, int, int] = (128, 128, 128),
) -> Tuple[np.ndarray, LetterboxInfo]:
    """
    Aspect-preserving resize into a fixed (width, height) canvas, centered on the padded axis.

    The binding axis fills the canvas; the other axis is padded evenly on both sides.
    `geometry.letterbox_to_original` undoes this placement.

    Returns:
        padded: (new_h, new_w, 3) image
        info: LetterboxInfo describing the placement
    """
    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for letterbox(). Install with `pip install opencv-python`.") from e

    if isinstance(new_shape, int):
        new_shape = (new_shape, new_shape)

    rows, cols = image.shape[:2]
    new_w, new_h = new_shape

    r_w = new_w / float(cols)
    r_h = new_h / float(rows)
    if r_h > r_w:
        resized_w, resized_h = new_w, int(r_w * rows)
        x, y = 0, (new_h - resized_h) // 2
        ratio = r_w
    else:
        resized_w, resized_h = int(r_h * cols), new_h
        x, y = (new_w - resized_w) // 2, 0
        ratio = r_h

    resized = cv2.resize(image, (resized_w, resized_h), interpolation=cv2.INTER_CUBIC)
    padded = np.full((new_h, new_w, image.shape[2]), color, dtype=image.dtype)
    padded[y : y + resized_h, x : x + resized_w] = resized

    return padded, LetterboxInfo(ratio=ratio, pad=(x, y), resized=(resized_w, resized_h))
