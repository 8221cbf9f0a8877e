import re

import pytest

from dropship_engine.services.suppliers.product_ids import normalize_product_id, numeric_product_id

STRUCTURED = re.compile(r"^pid:\d+:null$")


@pytest.mark.parametrize("raw", ["123", "pid:123", "pid:123:null", "pid:pid:123:null", " 123 ", 123])
def test_normalize_accepts_every_known_encoding(raw):
    assert normalize_product_id(raw) == "pid:123:null"


def test_normalize_is_idempotent():
    once = normalize_product_id("pid:pid:98765:null")
    assert STRUCTURED.match(once)
    assert normalize_product_id(once) == once


def test_numeric_strips_structure():
    assert numeric_product_id("pid:pid:98765:null") == "98765"
    assert numeric_product_id(98765) == "98765"


def test_no_digits_passes_through(caplog):
    assert normalize_product_id("abc-def") == "abc-def"
    assert numeric_product_id("abc-def") == "abc-def"
    assert "No digits" in caplog.text
