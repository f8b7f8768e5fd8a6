from cryptography.fernet import Fernet

from app.core.config import get_settings
from app.core.encryption import decrypt_secret, encrypt_secret


def test_round_trip_with_dev_key():
    token = encrypt_secret("Secret123")

    assert token != "Secret123"
    assert decrypt_secret(token) == "Secret123"
    assert decrypt_secret(None) == ""


def test_rotated_key_still_decrypts(monkeypatch):
    old, new = Fernet.generate_key().decode(), Fernet.generate_key().decode()
    monkeypatch.setattr(get_settings(), "token_encryption_key", old)
    stored = encrypt_secret("Secret123")

    monkeypatch.setattr(get_settings(), "token_encryption_key", f"{new},{old}")

    assert decrypt_secret(stored) == "Secret123"
    assert Fernet(new.encode()).decrypt(encrypt_secret("x").encode()) == b"x"


def test_unknown_key_yields_empty(monkeypatch):
    stored = encrypt_secret("Secret123")
    monkeypatch.setattr(get_settings(), "token_encryption_key", Fernet.generate_key().decode())

    assert decrypt_secret(stored) == ""
