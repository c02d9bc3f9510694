import pytest

from helpdesk.security.encryption import (
    CredentialDecryptionError,
    decrypt_secret,
    encrypt_secret,
)


def test_encrypted_secret_is_not_stored_in_plain_text():
    payload = encrypt_secret("imap-password")

    assert payload.startswith("v1:")
    assert "imap-password" not in payload
    assert encrypt_secret("imap-password") != payload
    assert decrypt_secret(payload) == "imap-password"


def test_legacy_plain_values_are_returned_unchanged():
    assert decrypt_secret("plain-password") == "plain-password"


def test_tampered_payload_is_rejected():
    payload = encrypt_secret("imap-password")
    tampered = payload[:-4] + ("AAAA" if not payload.endswith("AAAA") else "BBBB")

    with pytest.raises(CredentialDecryptionError):
        decrypt_secret(tampered)
