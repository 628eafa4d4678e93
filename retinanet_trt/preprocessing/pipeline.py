"""
Calibration Image Preprocessing

Turns image files into network-ready batches for INT8 calibration:
- Image loading and decoding (OpenCV)
- Aspect-preserving resize with zero padding
- Normalize and format conversion (HWC -> NCHW)
- Fixed-size batching
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

try:
    import cv2
    CV2_AVAILABLE = True
except ImportError:
    CV2_AVAILABLE = False


logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")


@dataclass
class PreprocessConfig:
    """Preprocessing configuration."""
    mean: Tuple[float, ...] = (0.485, 0.456, 0.406)
    std: Tuple[float, ...] = (0.229, 0.224, 0.225)
    to_rgb: bool = True


def find_images(directory: Union[str, Path], extensions: Sequence[str] = IMAGE_EXTENSIONS) -> List[str]:
    """Sorted image paths directly inside `directory`."""
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Calibration directory not found: {directory}")

    image_files = [
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in extensions
    ]
    image_files = sorted(str(p) for p in image_files)
    logger.info(f"Found {len(image_files)} images for calibration in {directory}")
    return image_files


def preprocess_image(
    img: np.ndarray,
    height: int,
    width: int,
    config: Optional[PreprocessConfig] = None,
) -> np.ndarray:
    """
    Letterbox a BGR uint8 image into a normalized CHW float32 tensor.

    The image is scaled to fit inside (height, width) keeping its aspect
    ratio; the remainder at the bottom/right is zero.
    """
    if not CV2_AVAILABLE:
        raise RuntimeError("OpenCV not available for image preprocessing")

    config = config or PreprocessConfig()

    src_h, src_w = img.shape[:2]
    scale = min(width / src_w, height / src_h)
    dst_w = max(1, min(width, int(round(src_w * scale))))
    dst_h = max(1, min(height, int(round(src_h * scale))))
    resized = cv2.resize(img, (dst_w, dst_h), interpolation=cv2.INTER_LINEAR)

    if config.to_rgb:
        resized = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)

    canvas = np.zeros((height, width, 3), dtype=np.float32)
    canvas[:dst_h, :dst_w] = resized.astype(np.float32) / 255.0

    mean = np.array(config.mean, dtype=np.float32)
    std = np.array(config.std, dtype=np.float32)
    canvas[:dst_h, :dst_w] = (canvas[:dst_h, :dst_w] - mean) / std

    # HWC -> CHW
    return canvas.transpose(2, 0, 1)


class ImageStream:
    """
    Fixed-size batches of preprocessed calibration images.

    Only full batches are produced; leftover images are skipped.

    Example:
        stream = ImageStream(4, (1, 3, 512, 512), image_paths)
        for batch in stream:
            assert batch.shape == (4, 3, 512, 512)
    """

    def __init__(
        self,
        batch_size: int,
        input_shape: Sequence[int],
        images: Sequence[str],
        config: Optional[PreprocessConfig] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if len(input_shape) != 4:
            raise ValueError(f"Expected NCHW input shape, got {tuple(input_shape)}")

        self.batch_size = batch_size
        self.input_shape = tuple(input_shape)
        self.images = [str(p) for p in images]
        self.config = config or PreprocessConfig()

        self.max_batches = len(self.images) // batch_size
        self.current_batch = 0

        if self.max_batches == 0:
            logger.warning(
                f"Only {len(self.images)} calibration images for batch size {batch_size}; "
                "no calibration batches available"
            )

    @property
    def height(self) -> int:
        return self.input_shape[2]

    @property
    def width(self) -> int:
        return self.input_shape[3]

    def __len__(self):
        return self.max_batches

    def __iter__(self):
        self.reset()
        return self

    def __next__(self) -> np.ndarray:
        batch = self.next()
        if batch is None:
            raise StopIteration
        return batch

    def reset(self):
        self.current_batch = 0

    def next(self) -> Optional[np.ndarray]:
        """Next batch as a contiguous float32 NCHW array, or None when done."""
        if self.current_batch >= self.max_batches:
            return None
        if not CV2_AVAILABLE:
            raise RuntimeError("OpenCV not available for calibration images")

        channels = self.input_shape[1]
        batch = np.zeros((self.batch_size, channels, self.height, self.width), dtype=np.float32)

        start = self.current_batch * self.batch_size
        for i, path in enumerate(self.images[start:start + self.batch_size]):
            img = cv2.imread(path)
            if img is None:
                raise FileNotFoundError(f"Could not read calibration image: {path}")
            batch[i] = preprocess_image(img, self.height, self.width, self.config)

        self.current_batch += 1
        logger.debug(f"Calibration batch {self.current_batch}/{self.max_batches}")
        return np.ascontiguousarray(batch)
