import pytest

from core.exceptions import ValidationError
from core.utils import mask_phone, new_id, normalize_phone


@pytest.mark.parametrize("raw, expected", [
    ("0712345678",       "254712345678"),
    ("712345678",        "254712345678"),
    ("254712345678",     "254712345678"),
    ("+254 712 345 678", "254712345678"),
    ("0712-345-678",     "254712345678"),
    ("0110123456",       "254110123456"),
])
def test_normalize_phone_accepts_kenyan_formats(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", None, "12345", "07123456789", "255712345678", "abc"])
def test_normalize_phone_rejects_everything_else(raw):
    with pytest.raises(ValidationError):
        normalize_phone(raw)


def test_mask_phone_keeps_prefix_and_last_digits():
    assert mask_phone("254712345678") == "254 ••• •• 78"
    assert mask_phone("") == ""


def test_new_id_has_prefix():
    value = new_id("rpt")
    assert value.startswith("rpt_")
    assert len(value) == len("rpt_") + 12
