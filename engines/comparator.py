"""Rank-aware element comparison of traced variable values.

Values travel as delimiter-encoded text: scalars are raw text, vectors are
comma separated, matrices are semicolon-separated rows of comma-separated
elements. Partial credit is counted per element.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

SCALAR, VECTOR, MATRIX = 0, 1, 2

ROW_SEPARATOR = ";"
ELEMENT_SEPARATOR = ","

_MATRIX_SUFFIXES = ("[,]", "[][]")
_VECTOR_SUFFIXES = ("[]",)


@dataclass(frozen=True)
class ElementMatch:
    matched: int
    total: int

    @property
    def mistakes(self) -> int:
        return self.total - self.matched

    @property
    def is_exact(self) -> bool:
        return self.matched == self.total


def rank_from_type(var_type: Optional[str]) -> int:
    """Infer the rank of a declared type such as ``int``, ``int[]`` or ``int[,]``."""
    text = (var_type or "").replace(" ", "")
    if text.endswith(_MATRIX_SUFFIXES):
        return MATRIX
    if text.endswith(_VECTOR_SUFFIXES):
        return VECTOR
    return SCALAR


def has_array_marker(var_type: Optional[str]) -> bool:
    return "[" in (var_type or "")


def _is_empty(value: Optional[str]) -> bool:
    return value is None or value == ""


def _effective_rank(var_type: Optional[str], rank: int) -> int:
    # Rank drives parsing; a declared type without an array marker pins it to scalar.
    if rank <= SCALAR:
        return SCALAR
    if var_type is not None and not has_array_marker(var_type):
        return SCALAR
    return MATRIX if rank >= MATRIX else VECTOR


def split_vector(value: str) -> List[str]:
    return [item.strip() for item in value.strip().split(ELEMENT_SEPARATOR)]


def split_matrix(value: str) -> List[List[str]]:
    return [split_vector(row) for row in value.strip().split(ROW_SEPARATOR)]


def _compare_rows(user: List[str], reference: List[str]) -> ElementMatch:
    matched = sum(1 for left, right in zip(user, reference) if left == right)
    return ElementMatch(matched=matched, total=max(len(user), len(reference)))


def compare(
    user_value: Optional[str],
    reference_value: Optional[str],
    var_type: Optional[str] = None,
    rank: int = SCALAR,
) -> ElementMatch:
    """Compare a submitted value with the reference value element by element.

    ``var_type`` of ``None`` means the type is unknown and ``rank`` alone
    decides how the values are split.
    """
    if _is_empty(user_value) or _is_empty(reference_value):
        same = (user_value or "") == (reference_value or "")
        return ElementMatch(matched=1 if same else 0, total=1)

    effective = _effective_rank(var_type, rank)
    if effective == SCALAR:
        same = user_value.strip() == reference_value.strip()
        return ElementMatch(matched=1 if same else 0, total=1)

    if effective == VECTOR:
        return _compare_rows(split_vector(user_value), split_vector(reference_value))

    user_rows = split_matrix(user_value)
    reference_rows = split_matrix(reference_value)
    matched = total = 0
    for user_row, reference_row in zip(user_rows, reference_rows):
        row = _compare_rows(user_row, reference_row)
        matched += row.matched
        total += row.total
    longer = user_rows if len(user_rows) > len(reference_rows) else reference_rows
    for extra_row in longer[min(len(user_rows), len(reference_rows)):]:
        total += len(extra_row)
    return ElementMatch(matched=matched, total=total)


def count_elements(value: Optional[str], var_type: Optional[str] = None, rank: int = SCALAR) -> int:
    """Number of scoreable elements in a single value, regardless of correctness."""
    if _is_empty(value):
        return 1
    effective = _effective_rank(var_type, rank)
    if effective == SCALAR:
        return 1
    if effective == VECTOR:
        return len(split_vector(value))
    return sum(len(row) for row in split_matrix(value))
