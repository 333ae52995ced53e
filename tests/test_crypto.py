import pytest

from adboard.crypto import CredentialError, decrypt, encrypt, get_stored_access_token
from adboard.settings import get_settings


def test_encrypted_format_and_recovery():
    payload = encrypt("EAAB-token")
    iv, tag, cipher = payload.split(":")
    assert len(bytes.fromhex(iv)) == 12
    assert len(bytes.fromhex(tag)) == 16
    assert "EAAB" not in payload
    assert get_stored_access_token(payload) == "EAAB-token"


def test_tampered_payload_is_rejected():
    iv, tag, cipher = encrypt("secret").split(":")
    flipped = format(int(cipher[:2], 16) ^ 0xFF, "02x") + cipher[2:]
    with pytest.raises(CredentialError):
        decrypt(f"{iv}:{tag}:{flipped}")


@pytest.mark.parametrize("payload", ["", "abc", "a:b", "zz:zz:zz", None])
def test_malformed_payloads(payload):
    with pytest.raises(CredentialError):
        get_stored_access_token(payload)


def test_missing_key(monkeypatch):
    payload = encrypt("secret")
    monkeypatch.setattr(get_settings(), "encryption_key", None)
    with pytest.raises(CredentialError):
        decrypt(payload)
