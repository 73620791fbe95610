# core/distance.py

import re
from typing import Sequence

import numpy as np

from photo_cleaner.core.exceptions import MalformedFingerprintError

FINGERPRINT_BITS = 256
FINGERPRINT_HEX_LENGTH = FINGERPRINT_BITS // 4

_HEX_FINGERPRINT = re.compile(r"^[0-9a-f]{%d}$" % FINGERPRINT_HEX_LENGTH)


def fingerprint_to_bits(fingerprint: str) -> np.ndarray:
    """
    Expand a normalized fingerprint into a packed uint8 array (32 bytes).

    Raises MalformedFingerprintError for anything that is not exactly
    64 lowercase hex characters; inputs are never coerced here.
    """
    if not isinstance(fingerprint, str) or not _HEX_FINGERPRINT.match(fingerprint):
        raise MalformedFingerprintError(
            f"expected {FINGERPRINT_HEX_LENGTH} hex characters, got {fingerprint!r}"
        )
    return np.frombuffer(bytes.fromhex(fingerprint), dtype=np.uint8)


def stack_fingerprints(fingerprints: Sequence[str]) -> np.ndarray:
    """Pack fingerprints into an (n, 32) uint8 matrix for vectorized distances"""
    if not fingerprints:
        return np.zeros((0, FINGERPRINT_BITS // 8), dtype=np.uint8)
    return np.vstack([fingerprint_to_bits(fp) for fp in fingerprints])


def hamming_distance(fp_a: str, fp_b: str) -> int:
    """Number of differing bits between two fingerprints"""
    xor = np.bitwise_xor(fingerprint_to_bits(fp_a), fingerprint_to_bits(fp_b))
    return int(np.unpackbits(xor).sum())


def distances_to(seed: np.ndarray, others: np.ndarray) -> np.ndarray:
    """Hamming distances from one packed fingerprint to each row of a matrix"""
    if others.shape[0] == 0:
        return np.zeros(0, dtype=np.int64)
    xor = np.bitwise_xor(others, seed)
    return np.unpackbits(xor, axis=1).sum(axis=1)


def similarity(fp_a: str, fp_b: str) -> float:
    """Similarity score in [0, 1], 1 meaning identical fingerprints"""
    return 1.0 - hamming_distance(fp_a, fp_b) / FINGERPRINT_BITS


class FingerprintComparator:
    """
    Distance predicates bound to configurable thresholds.

    The thresholds are policy; the distance computation itself is fixed.
    """

    def __init__(self,
                 near_duplicate_threshold: int = 10,
                 identical_threshold: int = 5):
        if not 0 <= identical_threshold <= near_duplicate_threshold <= FINGERPRINT_BITS:
            raise ValueError(
                "thresholds must satisfy 0 <= identical <= near_duplicate <= "
                f"{FINGERPRINT_BITS} (got {identical_threshold}, {near_duplicate_threshold})"
            )
        self.near_duplicate_threshold = near_duplicate_threshold
        self.identical_threshold = identical_threshold

    @classmethod
    def from_config(cls, similarity_config) -> 'FingerprintComparator':
        return cls(
            near_duplicate_threshold=similarity_config.near_duplicate_threshold,
            identical_threshold=similarity_config.identical_threshold,
        )

    def distance(self, fp_a: str, fp_b: str) -> int:
        return hamming_distance(fp_a, fp_b)

    def similarity(self, fp_a: str, fp_b: str) -> float:
        return similarity(fp_a, fp_b)

    def is_near_duplicate(self, fp_a: str, fp_b: str) -> bool:
        return hamming_distance(fp_a, fp_b) <= self.near_duplicate_threshold

    def is_identical(self, fp_a: str, fp_b: str) -> bool:
        return hamming_distance(fp_a, fp_b) <= self.identical_threshold
