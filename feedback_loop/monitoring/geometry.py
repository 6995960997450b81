"""
Distance metrics on the manifold of symmetric positive-definite matrices.

States are stored packed: the upper triangle of an n x n symmetric matrix in
row-major order, ``[a11, a12, ..., a1n, a22, ..., ann]``, length
``n * (n + 1) / 2``. For n = 2 this is ``[a, b, c]`` for ``[[a, b], [b, c]]``.

The distance never raises on bad input. Inputs that are not SPD, have the
wrong length or contain non-finite values score SENTINEL_DISTANCE, which is
far above every failure threshold.
"""

import logging
import math
from typing import List, Optional, Sequence

import numpy as np
from scipy import linalg

logger = logging.getLogger(__name__)

SENTINEL_DISTANCE = 999.0

# Imaginary residue tolerated from the Schur-based logarithm
LOGM_IMAG_TOLERANCE = 1e-9


def packed_length(n: int) -> int:
    return n * (n + 1) // 2


def packed_dimension(length: int) -> Optional[int]:
    """Dimension n with n(n+1)/2 == length, or None."""
    if length < 1:
        return None
    n = int((math.isqrt(8 * length + 1) - 1) // 2)
    return n if packed_length(n) == length else None


def pack_covariance(covariance: Sequence[float], n: int) -> List[float]:
    """
    Convert a row-major n x n covariance buffer to packed form.

    Only the upper triangle is read.

    Raises:
        ValueError: If the buffer is not n * n long
    """
    if len(covariance) != n * n:
        raise ValueError(f"Covariance buffer of length {len(covariance)} is not {n}x{n}")
    full = np.asarray(covariance, dtype=float).reshape(n, n)
    return full[np.triu_indices(n)].tolist()


def pack_spd(matrix: np.ndarray) -> List[float]:
    """Pack a full symmetric matrix."""
    n = matrix.shape[0]
    return np.asarray(matrix, dtype=float)[np.triu_indices(n)].tolist()


def unpack_spd(packed: Sequence[float], n: int) -> np.ndarray:
    """Expand a packed matrix into a full symmetric ndarray."""
    if len(packed) != packed_length(n):
        raise ValueError(f"Packed length {len(packed)} does not match dimension {n}")
    full = np.zeros((n, n), dtype=float)
    rows, cols = np.triu_indices(n)
    full[rows, cols] = packed
    full[cols, rows] = packed
    return full


def is_spd(packed: Sequence[float], n: int) -> bool:
    """True if ``packed`` describes a finite symmetric positive-definite matrix."""
    try:
        full = unpack_spd(packed, n)
    except (ValueError, TypeError):
        return False
    if not np.all(np.isfinite(full)):
        return False
    return bool(np.linalg.eigvalsh(full).min() > 0)


def frobenius_distance(packed_a: Sequence[float], packed_b: Sequence[float], n: int) -> float:
    """Frobenius norm of the difference, counting off-diagonal entries twice."""
    diff = unpack_spd(packed_a, n) - unpack_spd(packed_b, n)
    return float(np.linalg.norm(diff, "fro"))


def matrix_logarithm(packed: Sequence[float], n: int) -> np.ndarray:
    """
    Principal matrix logarithm of an SPD matrix (Schur-based).

    Raises:
        ValueError: If the result is not real and finite
    """
    log_m = linalg.logm(unpack_spd(packed, n))
    if np.iscomplexobj(log_m):
        if np.max(np.abs(log_m.imag)) > LOGM_IMAG_TOLERANCE:
            raise ValueError("Matrix logarithm has a non-negligible imaginary part")
        log_m = log_m.real
    if not np.all(np.isfinite(log_m)):
        raise ValueError("Matrix logarithm is not finite")
    # Symmetrize away round-off
    return (log_m + log_m.T) / 2.0


def _log_det_2x2(packed: Sequence[float]) -> Optional[float]:
    """Log-determinant via LU, or None if the matrix is not positive definite."""
    a, _, c = packed
    if a <= 0 or c <= 0:
        return None
    sign, log_det = np.linalg.slogdet(unpack_spd(packed, 2))
    if sign <= 0:
        return None
    return float(log_det)


def _closed_form_2x2(packed_a: Sequence[float], packed_b: Sequence[float]) -> float:
    a1, _, c1 = packed_a
    a2, _, c2 = packed_b

    # Work in log space so tiny or huge scales neither underflow nor overflow
    log_det_a = _log_det_2x2(packed_a)
    log_det_b = _log_det_2x2(packed_b)
    if log_det_a is None or log_det_b is None:
        return SENTINEL_DISTANCE

    log_det_diff = log_det_a - log_det_b
    log_trace_ratio = (
        np.logaddexp(math.log(a2), math.log(c2)) - np.logaddexp(math.log(a1), math.log(c1))
    )
    return float(math.hypot(log_det_diff, log_trace_ratio))


def geodesic_distance(packed_a: Sequence[float], packed_b: Sequence[float], n: int) -> float:
    """
    Curvature-aware distance between two packed SPD matrices.

    For 2 x 2 matrices a closed form combining the log-determinant difference
    and the log-trace ratio is used; it is symmetric and zero on identical
    inputs. For other dimensions the log-Euclidean distance
    ``||log(A) - log(B)||_F`` is used, falling back to the raw Frobenius
    distance if the logarithm cannot be taken.

    Args:
        packed_a: First packed SPD matrix
        packed_b: Second packed SPD matrix
        n: Matrix dimension

    Returns:
        Non-negative distance capped at SENTINEL_DISTANCE, which is also
        returned for invalid input or a non-finite result
    """
    expected = packed_length(n)
    if n < 1 or len(packed_a) != expected or len(packed_b) != expected:
        return SENTINEL_DISTANCE

    try:
        values = [float(v) for v in packed_a] + [float(v) for v in packed_b]
    except (TypeError, ValueError):
        return SENTINEL_DISTANCE
    if not all(math.isfinite(v) for v in values):
        return SENTINEL_DISTANCE

    if n == 2:
        try:
            distance = _closed_form_2x2(values[:3], values[3:])
        except (ValueError, ZeroDivisionError, OverflowError, np.linalg.LinAlgError):
            return SENTINEL_DISTANCE
    elif not is_spd(packed_a, n) or not is_spd(packed_b, n):
        return SENTINEL_DISTANCE
    else:
        try:
            log_a = matrix_logarithm(packed_a, n)
            log_b = matrix_logarithm(packed_b, n)
            distance = float(np.linalg.norm(log_a - log_b, "fro"))
        except (ValueError, np.linalg.LinAlgError) as e:
            logger.debug(f"Matrix logarithm failed ({e}); using Frobenius distance")
            distance = frobenius_distance(packed_a, packed_b, n)

    # Overflow anywhere above must not read as a small or NaN distance
    if not math.isfinite(distance):
        return SENTINEL_DISTANCE
    return min(distance, SENTINEL_DISTANCE)


def detect_regime_shift(
    current: Sequence[float],
    history: Sequence[Sequence[float]],
    n: int,
    threshold: float = 0.5,
) -> bool:
    """True if the mean distance from ``current`` to ``history`` exceeds threshold."""
    if not history:
        return False
    total = sum(geodesic_distance(current, past, n) for past in history)
    return total / len(history) > threshold
