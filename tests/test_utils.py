from smartcard.util import toHexString

from readers import get_hex_string


def test_hex_string_uses_pyscard_format():
    atr = bytes.fromhex("3B8F8001804F")

    assert get_hex_string(atr) == toHexString(list(atr)) == "3B 8F 80 01 80 4F"


def test_hex_string_of_nothing():
    assert get_hex_string(None) == ""
    assert get_hex_string(b"") == ""
