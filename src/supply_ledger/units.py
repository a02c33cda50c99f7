"""Package/unit conversion helpers.

Items are counted in two denominations: whole packages (``"Case of 12"``) and
loose units. The balance engine works on a single integer scalar, the total
unit count, and only splits it back into packages and units for display.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

from . import log


_DIGIT_RUN = re.compile(r"\d+")


def package_size(descriptor: Optional[str]) -> int:
    """Return the package-size factor parsed from a free-text descriptor.

    The first contiguous digit run wins, so ``"Case of 12 (2 rows)"`` yields
    ``12``. Empty, missing, or digit-free descriptors fall back to ``1``,
    which puts the item in units-only mode. A parsed value of ``0`` is also
    reported as ``1`` because zero-sized packages cannot be converted.

    Args:
        descriptor (str | None): Package text as stored on the item.

    Returns:
        int: Positive number of units contained in one package.
    """

    if not descriptor:
        return 1
    match = _DIGIT_RUN.search(str(descriptor))
    if match is None:
        log.debug("No package size found in descriptor '%s'; using 1", descriptor)
        return 1
    size = int(match.group())
    return size if size > 0 else 1


def to_total_units(packages: int, units: int, size: int) -> int:
    """Collapse a ``(packages, units)`` pair into total units."""

    if size <= 1:
        size = 1
    return packages * size + units


def from_total_units(total: int, size: int) -> Tuple[int, int]:
    """Split total units into ``(packages, units)`` for display.

    Floor-division semantics apply to negative totals: packages round toward
    negative infinity and the unit remainder always lies in ``[0, size)``.
    ``-5`` units of a 12-pack therefore render as ``(-1, 7)``, which converts
    back to ``-5`` through :func:`to_total_units`.

    Args:
        total (int): Signed total unit count.
        size (int): Package-size factor. Values ``<= 1`` disable packaging.

    Returns:
        tuple[int, int]: ``(packages, units)``.
    """

    if size <= 1:
        return 0, total
    packages, units = divmod(total, size)
    return packages, units


__all__ = ["package_size", "to_total_units", "from_total_units"]
