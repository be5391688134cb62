import pytest

from agentbox.crypto import CredentialCrypto, CryptoError

from fakes import ENCRYPTION_KEY


def test_encrypt_produces_three_hex_segments():
    crypto = CredentialCrypto(ENCRYPTION_KEY)
    sealed = crypto.encrypt("hunter2")
    iv, tag, body = sealed.split(":")
    assert len(bytes.fromhex(iv)) == 12
    assert len(bytes.fromhex(tag)) == 16
    assert bytes.fromhex(body)
    assert crypto.decrypt(sealed) == "hunter2"


def test_encrypt_uses_fresh_iv_each_time():
    crypto = CredentialCrypto(ENCRYPTION_KEY)
    assert crypto.encrypt("same") != crypto.encrypt("same")


@pytest.mark.parametrize(
    "ciphertext",
    [
        "",
        "abcd",
        "aa:bb",
        "aa:bb:cc:dd",
        "zz:" + "00" * 16 + ":00",
        "00" * 11 + ":" + "00" * 16 + ":00",
        "00" * 12 + ":" + "00" * 15 + ":00",
    ],
)
def test_decrypt_rejects_malformed_input(ciphertext):
    crypto = CredentialCrypto(ENCRYPTION_KEY)
    with pytest.raises(CryptoError):
        crypto.decrypt(ciphertext)


def test_decrypt_rejects_tampered_ciphertext():
    crypto = CredentialCrypto(ENCRYPTION_KEY)
    iv, tag, body = crypto.encrypt("bot-token").split(":")
    flipped = format(int(body[:2], 16) ^ 0x01, "02x") + body[2:]
    with pytest.raises(CryptoError):
        crypto.decrypt(f"{iv}:{tag}:{flipped}")


def test_decrypt_with_other_key_fails():
    sealed = CredentialCrypto(ENCRYPTION_KEY).encrypt("secret")
    with pytest.raises(CryptoError):
        CredentialCrypto("22" * 32).decrypt(sealed)


@pytest.mark.parametrize("key", ["", "11" * 31, "xy" * 32])
def test_constructor_validates_key(key):
    with pytest.raises(CryptoError):
        CredentialCrypto(key)
