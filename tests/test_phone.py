import pytest

from relay.services.phone import normalize_phone, to_channel_address


@pytest.mark.parametrize(
    "raw",
    ["whatsapp:+33600000001", "+33 6 00 00 00 01", "33600000001", "0033600000001", "WhatsApp: +33-600-000-001"],
)
def test_forms_of_the_same_number_normalize_alike(raw):
    assert normalize_phone(raw) == "+33600000001"


@pytest.mark.parametrize("raw", [None, "", "whatsapp:", "abc"])
def test_no_digits_is_none(raw):
    assert normalize_phone(raw) is None


def test_channel_address():
    assert to_channel_address("+14155238886") == "whatsapp:+14155238886"
    assert to_channel_address("14155238886") == "whatsapp:+14155238886"
