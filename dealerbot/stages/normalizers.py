"""Field normalisation for structured inference responses.

The inference backend returns loosely-typed JSON: prices as ``"$ 1.500.000"``,
years as ``"2019"``, keys sometimes in Spanish (``marca``, ``precio``).  The
stage parsers run every field through these helpers so a bad value becomes
``None`` instead of failing the whole record.

Every helper returns ``None`` (or an empty list) for input it cannot use and
never raises.

Typical usage::

    from dealerbot.stages.normalizers import normalise_number, pick

    price = normalise_number(pick(data, "price", "precio"))
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from typing import Any, Final
from urllib.parse import urljoin, urlsplit

from dealerbot.core.models import OpportunityLevel, VehicleCondition

__all__ = [
    "pick",
    "normalise_text",
    "normalise_number",
    "normalise_int",
    "normalise_condition",
    "normalise_opportunity",
    "normalise_string_list",
    "normalise_url",
    "normalise_url_list",
]

logger = logging.getLogger(__name__)

_WHITESPACE_RE: Final[re.Pattern[str]] = re.compile(r"\s+")

# Everything except digits, separators and the minus sign.
_NON_NUMERIC_RE: Final[re.Pattern[str]] = re.compile(r"[^\d.,\-]")

_CONDITION_ALIASES: Final[dict[str, VehicleCondition]] = {
    "new": VehicleCondition.NEW,
    "nuevo": VehicleCondition.NEW,
    "0km": VehicleCondition.NEW,
    "0 km": VehicleCondition.NEW,
    "used": VehicleCondition.USED,
    "usado": VehicleCondition.USED,
    "pre-owned": VehicleCondition.USED,
    "certified": VehicleCondition.CERTIFIED,
    "certified pre-owned": VehicleCondition.CERTIFIED,
    "seminuevo": VehicleCondition.CERTIFIED,
}

_OPPORTUNITY_ALIASES: Final[dict[str, OpportunityLevel]] = {
    "high": OpportunityLevel.HIGH,
    "alta": OpportunityLevel.HIGH,
    "medium": OpportunityLevel.MEDIUM,
    "media": OpportunityLevel.MEDIUM,
    "low": OpportunityLevel.LOW,
    "baja": OpportunityLevel.LOW,
}


def pick(data: Mapping[str, Any], *keys: str) -> Any:
    """Return the value of the first key of *keys* present in *data*."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------


def normalise_text(value: Any) -> str | None:
    """Strip and collapse whitespace; ``None`` for non-strings and blanks.

    Examples::

        normalise_text("  Toyota   Corolla ")  # → "Toyota Corolla"
        normalise_text(42)                     # → None
    """
    if not isinstance(value, str):
        return None
    cleaned = _WHITESPACE_RE.sub(" ", value).strip()
    return cleaned or None


def normalise_number(value: Any) -> float | None:
    """Coerce a price-like value to a non-negative float.

    Strings may carry currency symbols and thousands separators.  When both
    ``.`` and ``,`` appear, the rightmost one is the decimal separator.  A
    single separator kind followed by exactly three digits, or repeated, is
    read as a thousands separator.

    Examples::

        normalise_number(15000)           # → 15000.0
        normalise_number("$ 1.500.000")   # → 1500000.0
        normalise_number("12,500.50")     # → 12500.5
        normalise_number("9,5")           # → 9.5
        normalise_number(-3)              # → None
        normalise_number("consultar")     # → None
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = _NON_NUMERIC_RE.sub("", value)
        if not cleaned or not any(ch.isdigit() for ch in cleaned):
            return None
        if "," in cleaned and "." in cleaned:
            decimal = "," if cleaned.rfind(",") > cleaned.rfind(".") else "."
            thousands = "." if decimal == "," else ","
            cleaned = cleaned.replace(thousands, "").replace(decimal, ".")
        elif "," in cleaned or "." in cleaned:
            sep = "," if "," in cleaned else "."
            tail = cleaned.rpartition(sep)[2]
            if cleaned.count(sep) > 1 or len(tail) == 3:
                cleaned = cleaned.replace(sep, "")
            else:
                cleaned = cleaned.replace(sep, ".")
        try:
            number = float(cleaned)
        except ValueError:
            logger.debug("normalise_number: cannot parse %r", value)
            return None
    else:
        return None

    if not math.isfinite(number) or number < 0:
        return None
    return number


def normalise_int(value: Any) -> int | None:
    """Like :func:`normalise_number` but rounded to an ``int``."""
    number = normalise_number(value)
    return None if number is None else int(round(number))


def normalise_condition(value: Any) -> VehicleCondition | None:
    text = normalise_text(value)
    if text is None:
        return None
    return _CONDITION_ALIASES.get(text.casefold())


def normalise_opportunity(value: Any) -> OpportunityLevel:
    """Map an opportunity label to :class:`OpportunityLevel`; default medium."""
    text = normalise_text(value)
    if text is None:
        return OpportunityLevel.MEDIUM
    return _OPPORTUNITY_ALIASES.get(text.casefold(), OpportunityLevel.MEDIUM)


# ---------------------------------------------------------------------------
# Lists and URLs
# ---------------------------------------------------------------------------


def normalise_string_list(value: Any) -> list[str]:
    """Return the non-blank strings of a list, or of a comma-separated string."""
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        return []
    out: list[str] = []
    for item in value:
        text = normalise_text(item)
        if text is not None and text not in out:
            out.append(text)
    return out


def normalise_url(value: Any, *, base_url: str) -> str | None:
    """Resolve *value* against *base_url*; ``None`` unless the result is http(s).

    Examples::

        normalise_url("/auto/123", base_url="https://dealer.example/usados")
        # → "https://dealer.example/auto/123"
        normalise_url("javascript:void(0)", base_url="https://dealer.example/")
        # → None
    """
    text = normalise_text(value)
    if text is None:
        return None
    resolved = urljoin(base_url, text)
    parts = urlsplit(resolved)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return None
    return parts._replace(fragment="").geturl()


def normalise_url_list(value: Any, *, base_url: str) -> list[str]:
    """Resolve a list of URLs, dropping invalid entries and duplicates."""
    if not isinstance(value, (list, tuple)):
        return []
    out: list[str] = []
    for item in value:
        url = normalise_url(item, base_url=base_url)
        if url is not None and url not in out:
            out.append(url)
    return out
