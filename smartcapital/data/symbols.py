"""
Ticker symbol validation and normalization.
"""

import re

# 1-5 letters or digits: TSLA, QQQ, 2330, 0050
SYMBOL_PATTERN = re.compile(r"^[A-Z0-9]{1,5}$", re.IGNORECASE)

TAIWAN_SUFFIX = ".TW"
_TAIWAN_LISTED = re.compile(r"^\d{4}$")
_TAIWAN_ETF = re.compile(r"^0\d{3,4}$")


def is_valid_symbol(text: str) -> bool:
    """Check whether text looks like a ticker symbol."""
    return bool(SYMBOL_PATTERN.match(text.strip()))


def normalize_symbol(text: str) -> str:
    """
    Convert user input into the symbol the market data source expects.

    Taiwan listed shares (four digits) and ETFs (0 followed by three or four
    digits) get the .TW suffix. Anything already carrying a suffix is only
    upper-cased.

    Examples:
        "tsla" -> "TSLA"
        "2330" -> "2330.TW"
        "00878" -> "00878.TW"
    """
    clean = text.strip().upper()
    if "." in clean:
        return clean
    if _TAIWAN_LISTED.match(clean) or _TAIWAN_ETF.match(clean):
        return f"{clean}{TAIWAN_SUFFIX}"
    return clean


def display_symbol(symbol: str) -> str:
    """Strip the exchange suffix for display."""
    return symbol.split(".", 1)[0]


def currency_for_symbol(symbol: str) -> str:
    """Quote currency implied by the symbol's exchange suffix."""
    return "TWD" if symbol.upper().endswith(TAIWAN_SUFFIX) else "USD"
