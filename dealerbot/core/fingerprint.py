"""Content fingerprint used for record deduplication.

The fingerprint identifies *the same vehicle offer* independently of where it
was found, so two dealerships re-posting one car (or one dealership listing it
under two URLs) collapse into a single stored item.

Fingerprint contract
--------------------
The input tuple is normalised before hashing:

+-----------+--------------------------------------------------------+
| Field     | Normalisation                                          |
+===========+========================================================+
| brand     | casefolded, inner whitespace collapsed                 |
+-----------+--------------------------------------------------------+
| model     | casefolded, inner whitespace collapsed                 |
+-----------+--------------------------------------------------------+
| year      | as-is                                                  |
+-----------+--------------------------------------------------------+
| price     | rounded to the nearest :data:`PRICE_ROUNDING`          |
+-----------+--------------------------------------------------------+
| mileage   | rounded to the nearest :data:`MILEAGE_ROUNDING`        |
+-----------+--------------------------------------------------------+

Missing values hash as an empty component, so a record without mileage never
collides with one that reports ``0`` km.

Typical usage::

    from dealerbot.core.fingerprint import record_fingerprint

    fp = record_fingerprint(record)     # 64-char hex digest
"""

from __future__ import annotations

import hashlib
import logging
from typing import Final

from dealerbot.core.models import ExtractedRecord

__all__ = [
    "PRICE_ROUNDING",
    "MILEAGE_ROUNDING",
    "normalize_name",
    "fingerprint",
    "record_fingerprint",
]

logger = logging.getLogger(__name__)

#: Prices within the same 100-unit step share a fingerprint.
PRICE_ROUNDING: Final[int] = 100

#: Mileages within the same 1000-km step share a fingerprint.
MILEAGE_ROUNDING: Final[int] = 1000

_SEPARATOR: Final[str] = "|"


def normalize_name(value: str) -> str:
    """Return the lookup key for a brand or model display name.

    Example::

        assert normalize_name("  Mercedes   Benz ") == "mercedes benz"
    """
    return " ".join(value.split()).casefold()


def _round_to(value: float | None, step: int) -> str:
    if value is None:
        return ""
    return str(int(round(value / step)) * step)


def fingerprint(
    brand: str | None,
    model: str | None,
    year: int | None,
    price: float | None,
    mileage: float | None,
) -> str:
    """Compute the SHA-256 fingerprint of a normalised field tuple.

    Args:
        brand: Brand display name.
        model: Model display name.
        year: Model year.
        price: Asking price.
        mileage: Odometer reading.

    Returns:
        Lowercase hex digest.
    """
    parts = (
        normalize_name(brand) if brand else "",
        normalize_name(model) if model else "",
        str(year) if year is not None else "",
        _round_to(price, PRICE_ROUNDING),
        _round_to(mileage, MILEAGE_ROUNDING),
    )
    return hashlib.sha256(_SEPARATOR.join(parts).encode("utf-8")).hexdigest()


def record_fingerprint(record: ExtractedRecord) -> str:
    """Convenience wrapper around :func:`fingerprint` for an extracted record."""
    return fingerprint(record.brand, record.model, record.year, record.price, record.mileage)
