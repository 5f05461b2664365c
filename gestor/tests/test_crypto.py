import pytest
from conftest import FakeFunctions

from gestor.clients.crypto import CredentialCrypto, credential_fingerprint, is_encrypted
from gestor.core.errors import ProviderRequestError


def test_is_encrypted_detection():
    assert is_encrypted("enc:abc")
    assert is_encrypted("A" * 60)
    assert not is_encrypted("senha123")
    assert not is_encrypted("")
    assert not is_encrypted(None)


def test_fingerprint_ignores_login_case_and_spaces():
    assert credential_fingerprint(" Joao ", "123") == credential_fingerprint("joao", "123")
    assert credential_fingerprint("joao", "123") != credential_fingerprint("joao", "124")
    assert len(credential_fingerprint("x")) == 64


@pytest.mark.anyio
async def test_encrypt_returns_ciphertext():
    functions = FakeFunctions({"crypto": {"encrypted": "enc:xyz"}})
    crypto = CredentialCrypto(functions, retry_base_s=0)
    assert await crypto.encrypt("segredo") == "enc:xyz"
    assert functions.calls == [("crypto", {"action": "encrypt", "data": "segredo"})]


@pytest.mark.anyio
async def test_encrypt_blank_skips_call():
    functions = FakeFunctions()
    crypto = CredentialCrypto(functions, retry_base_s=0)
    assert await crypto.encrypt("   ") == ""
    assert functions.calls == []


@pytest.mark.anyio
async def test_encrypt_never_returns_plaintext_on_failure():
    functions = FakeFunctions({"crypto": ProviderRequestError("timeout", provider="supabase", transient=True)})
    crypto = CredentialCrypto(functions, retry_base_s=0)
    assert await crypto.encrypt("segredo") == ""
    assert len(functions.calls) == 3


@pytest.mark.anyio
async def test_encrypt_invalid_response_is_retried_then_empty():
    functions = FakeFunctions({"crypto": {"ok": True}})
    crypto = CredentialCrypto(functions, retry_base_s=0)
    assert await crypto.encrypt("segredo") == ""
    assert len(functions.calls) == 3


@pytest.mark.anyio
async def test_decrypt():
    functions = FakeFunctions({"crypto": {"decrypted": "segredo"}})
    crypto = CredentialCrypto(functions, retry_base_s=0)
    assert await crypto.decrypt("enc:xyz") == "segredo"
    assert await crypto.decrypt("") == ""
