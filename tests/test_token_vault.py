import pytest

from core.errors import TokenUnreadableError
from models.sync import EncryptedToken
from services.token_vault import TokenVault


@pytest.fixture()
def vault():
    return TokenVault(iterations=1000)


def test_round_trip(vault):
    sealed = vault.encrypt("ya29.access-token", "secret-1")
    assert sealed.ciphertext and sealed.salt and sealed.iv
    assert "ya29" not in sealed.ciphertext
    assert vault.decrypt(sealed, "secret-1") == "ya29.access-token"


def test_fresh_salt_and_iv_per_encryption(vault):
    first = vault.encrypt("token", "secret-1")
    second = vault.encrypt("token", "secret-1")
    assert first.salt != second.salt
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_wrong_secret_fails_closed(vault):
    sealed = vault.encrypt("token", "secret-1")
    with pytest.raises(TokenUnreadableError):
        vault.decrypt(sealed, "secret-2")


def test_tampered_ciphertext_fails_closed(vault):
    sealed = vault.encrypt("token", "secret-1")
    other = vault.encrypt("other", "secret-1")
    forged = EncryptedToken(ciphertext=other.ciphertext, salt=sealed.salt, iv=sealed.iv)
    with pytest.raises(TokenUnreadableError):
        vault.decrypt(forged, "secret-1")


def test_corrupt_fields_fail_closed(vault):
    sealed = vault.encrypt("token", "secret-1")
    with pytest.raises(TokenUnreadableError):
        vault.decrypt(EncryptedToken(ciphertext="%%%", salt=sealed.salt, iv=sealed.iv), "secret-1")
    with pytest.raises(TokenUnreadableError):
        vault.decrypt(EncryptedToken(ciphertext=sealed.ciphertext, salt=sealed.salt, iv="AAAA"), "secret-1")
