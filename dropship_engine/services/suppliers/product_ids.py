"""
Supplier product identifier normalization

Product ids reach us as "123", "pid:123", "pid:123:null" or even
"pid:pid:123:null". The first run of digits is the id; the structured form
is "pid:<digits>:null". Every adapter call that takes a product id goes
through one of these two functions.
"""
import logging
import re

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"\d+")


def numeric_product_id(raw) -> str:
    """Bare digit run, or the input unchanged (logged) when it has none."""
    text = "" if raw is None else str(raw).strip()
    match = _DIGITS.search(text)
    if match is None:
        logger.warning(f"[PRODUCT_ID] No digits in product id {text!r}, passing through")
        return text
    return match.group(0)


def normalize_product_id(raw) -> str:
    """Structured "pid:<digits>:null" form, or the input unchanged when it has no digits."""
    text = "" if raw is None else str(raw).strip()
    match = _DIGITS.search(text)
    if match is None:
        logger.warning(f"[PRODUCT_ID] No digits in product id {text!r}, passing through")
        return text
    return f"pid:{match.group(0)}:null"
