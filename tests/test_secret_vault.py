"""Tests for the secret vault."""

import pytest

from app.services.secret_vault import SecretVault, VaultError, vault


class TestSecretVault:
    def test_sealed_value_hides_plaintext(self):
        sealed = vault.seal("ghp_supersecret")
        assert sealed.startswith("enc:")
        assert "ghp_supersecret" not in sealed
        assert vault.open(sealed) == "ghp_supersecret"

    def test_sealing_is_not_deterministic(self):
        assert vault.seal("same") != vault.seal("same")

    def test_open_rejects_plaintext(self):
        with pytest.raises(VaultError):
            vault.open("not-sealed")

    def test_open_rejects_tampered_token(self):
        sealed = vault.seal("value")
        with pytest.raises(VaultError):
            vault.open(sealed[:-4] + "AAAA")

    def test_json_credentials(self):
        sealed = vault.seal_json({"token": "t", "username": "u"})
        assert SecretVault.is_sealed(sealed)
        assert vault.open_json(sealed) == {"token": "t", "username": "u"}
        assert vault.open_json(None) == {}

    def test_json_must_be_object(self):
        with pytest.raises(VaultError):
            vault.open_json(vault.seal("[1, 2]"))

    def test_is_sealed(self):
        assert not SecretVault.is_sealed(None)
        assert not SecretVault.is_sealed("")
        assert not SecretVault.is_sealed("plain")
