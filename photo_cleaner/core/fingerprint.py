# core/fingerprint.py

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

import cv2
import imagehash
from PIL import Image, ImageOps

from photo_cleaner.core.distance import FINGERPRINT_HEX_LENGTH
from photo_cleaner.core.exceptions import PhotoFingerprintError
from photo_cleaner.core.models import FingerprintSource, Photo

logger = logging.getLogger(__name__)

_NON_HEX = re.compile(r"[^0-9a-f]")


def normalize_fingerprint(fingerprint: str) -> str:
    """
    Bring any fingerprint string to exactly FINGERPRINT_HEX_LENGTH hex chars.

    Non-hex characters are dropped, the rest lowercased, then the value is
    truncated or right-padded with '0'.
    """
    clean = _NON_HEX.sub("", (fingerprint or "").lower())
    if len(clean) >= FINGERPRINT_HEX_LENGTH:
        return clean[:FINGERPRINT_HEX_LENGTH]
    return clean.ljust(FINGERPRINT_HEX_LENGTH, "0")


def categorize_file_size(file_size: int) -> str:
    """Bucket byte sizes so recompression noise does not change the fallback"""
    if file_size < 100 * 1024:
        return "small"
    if file_size < 500 * 1024:
        return "medium-small"
    if file_size < 2 * 1024 * 1024:
        return "medium"
    if file_size < 5 * 1024 * 1024:
        return "large"
    return "very-large"


class ImageDecodeError(Exception):
    """Image content could not be read or decoded"""


@dataclass(frozen=True)
class FingerprintResult:
    value: str
    source: FingerprintSource

    @property
    def degraded(self) -> bool:
        return self.source is FingerprintSource.FALLBACK


class Fingerprinter(ABC):
    """
    Strategy mapping one photo to a fixed-length hex fingerprint.

    Subclasses only implement compute_image_fingerprint(); the dimension
    fallback and length normalization are shared. Output depends on pixel
    content only, never on file name, timestamps or storage path.
    """

    name = "base"

    def __init__(self, allow_fallback: bool = True):
        self.allow_fallback = allow_fallback

    @abstractmethod
    def compute_image_fingerprint(self, file_path: str) -> str:
        """Hash the decoded image; raise ImageDecodeError or OSError on failure"""

    def fingerprint(self, photo: Photo) -> FingerprintResult:
        try:
            value = self.compute_image_fingerprint(photo.file_path)
            return FingerprintResult(normalize_fingerprint(value), FingerprintSource.IMAGE)
        except (ImageDecodeError, OSError, ValueError, cv2.error) as e:
            if not self.allow_fallback:
                raise PhotoFingerprintError(photo.local_identifier, str(e)) from e
            logger.warning(
                "Image hashing failed for %s (%s); using degraded dimension fingerprint",
                photo.local_identifier, e
            )
            return self.dimension_fingerprint(photo)

    def dimension_fingerprint(self, photo: Photo) -> FingerprintResult:
        """
        Weak fallback built from pixel count, aspect ratio and a size bucket.

        Distinct photos with identical dimensions and a similar size collide,
        so results are tagged FingerprintSource.FALLBACK.
        """
        if photo.width <= 0 or photo.height <= 0:
            raise PhotoFingerprintError(
                photo.local_identifier,
                "image unreadable and no dimensions available for fallback"
            )
        aspect_ratio = f"{photo.width / photo.height:.6f}"
        visual_input = f"{photo.pixel_count}-{aspect_ratio}-{categorize_file_size(photo.file_size)}"
        digest = hashlib.sha256(visual_input.encode("utf-8")).hexdigest()
        return FingerprintResult(normalize_fingerprint(digest), FingerprintSource.FALLBACK)


class MultiResolutionFingerprinter(Fingerprinter):
    """
    Composite of recompressed thumbnails at several resolutions.

    The image is normalized to a small square JPEG, then re-encoded at each
    resolution with heavy compression; the digests are concatenated and
    hashed again. Identical pixels give identical output, but the result is
    not similarity-preserving: near-duplicates usually land far apart.
    """

    name = "multires"

    def __init__(self,
                 allow_fallback: bool = True,
                 base_size: int = 64,
                 resolutions: Sequence[int] = (8, 16, 32),
                 base_jpeg_quality: int = 30,
                 jpeg_quality: int = 10):
        super().__init__(allow_fallback)
        self.base_size = base_size
        self.resolutions = tuple(resolutions)
        self.base_jpeg_quality = base_jpeg_quality
        self.jpeg_quality = jpeg_quality

    def _recompress(self, img, size: int, quality: int):
        resized = cv2.resize(img, (size, size), interpolation=cv2.INTER_AREA)
        ok, buffer = cv2.imencode('.jpg', resized, [cv2.IMWRITE_JPEG_QUALITY, quality])
        if not ok:
            raise ImageDecodeError(f"JPEG re-encode failed at {size}x{size}")
        return buffer

    def compute_image_fingerprint(self, file_path: str) -> str:
        img = cv2.imread(file_path, cv2.IMREAD_COLOR)
        if img is None:
            raise ImageDecodeError(f"cannot decode {file_path}")

        base_buffer = self._recompress(img, self.base_size, self.base_jpeg_quality)
        normalized = cv2.imdecode(base_buffer, cv2.IMREAD_COLOR)

        parts = []
        for size in self.resolutions:
            buffer = self._recompress(normalized, size, self.jpeg_quality)
            parts.append(hashlib.sha256(buffer.tobytes()).hexdigest()[:16])

        return hashlib.sha256("-".join(parts).encode("ascii")).hexdigest()


class PerceptualFingerprinter(Fingerprinter):
    """
    Four 64-bit perceptual hashes (pHash, dHash, vertical dHash, aHash)
    concatenated into 256 bits. Small visual edits flip few bits, so the
    near-duplicate threshold is meaningful.
    """

    name = "perceptual"

    def __init__(self, allow_fallback: bool = True, max_image_pixels: int = 100_000_000):
        super().__init__(allow_fallback)
        Image.MAX_IMAGE_PIXELS = max_image_pixels

    def compute_image_fingerprint(self, file_path: str) -> str:
        with Image.open(file_path) as img:
            img = ImageOps.exif_transpose(img)
            if img.mode != 'RGB':
                img = img.convert('RGB')

            # Thumbnail first, every hash downsamples far below this anyway
            img.thumbnail((512, 512), Image.Resampling.LANCZOS)

            hashes = [
                imagehash.phash(img, hash_size=8),
                imagehash.dhash(img, hash_size=8),
                imagehash.dhash_vertical(img, hash_size=8),
                imagehash.average_hash(img, hash_size=8),
            ]
        return "".join(str(h) for h in hashes)


def create_fingerprinter(fingerprint_config) -> Fingerprinter:
    """Build the configured fingerprint strategy"""
    if fingerprint_config.method == MultiResolutionFingerprinter.name:
        return MultiResolutionFingerprinter(
            allow_fallback=fingerprint_config.allow_fallback,
            base_size=fingerprint_config.base_size,
            resolutions=fingerprint_config.resolutions,
            base_jpeg_quality=fingerprint_config.base_jpeg_quality,
            jpeg_quality=fingerprint_config.jpeg_quality,
        )
    if fingerprint_config.method == PerceptualFingerprinter.name:
        return PerceptualFingerprinter(
            allow_fallback=fingerprint_config.allow_fallback,
            max_image_pixels=fingerprint_config.max_image_pixels,
        )
    raise ValueError(f"Unknown fingerprint method: {fingerprint_config.method}")
