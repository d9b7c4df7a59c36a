import pytest
from cryptography.exceptions import InvalidTag

from cafe_scraper.core.secrets import decrypt_string, encrypt_string


def test_encrypt_format_and_decrypt():
    payload = encrypt_string('{"cookies": []}', "s3cret")
    assert payload.startswith("v1:")
    assert len(payload.split(":")) == 4
    assert decrypt_string(payload, "s3cret") == '{"cookies": []}'


def test_each_encryption_uses_fresh_iv():
    assert encrypt_string("same", "k") != encrypt_string("same", "k")


def test_wrong_secret_fails_authentication():
    payload = encrypt_string("data", "right")
    with pytest.raises(InvalidTag):
        decrypt_string(payload, "wrong")


def test_malformed_payload_and_missing_secret():
    with pytest.raises(ValueError):
        decrypt_string("v2:a:b", "k")
    with pytest.raises(ValueError):
        encrypt_string("data", "")
