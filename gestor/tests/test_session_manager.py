import asyncio
from types import SimpleNamespace

import pytest
from conftest import FakeSupabase

from gestor.core.errors import ProviderRequestError
from gestor.session.cache import SessionCache
from gestor.session.manager import AUTHENTICATED, LOADING, UNAUTHENTICATED, AuthSessionManager


class _Subscription:
    def __init__(self):
        self.active = True

    def unsubscribe(self):
        self.active = False


class _FakeAuth:
    def __init__(self, session=None, session_error=None, sign_in_error=None):
        self.session = session
        self.session_error = session_error
        self.sign_in_error = sign_in_error
        self.callback = None
        self.subscription = _Subscription()
        self.signed_in = []
        self.signed_out = False
        self.updates = []

    def on_auth_state_change(self, callback):
        self.callback = callback
        return self.subscription

    def get_session(self):
        if self.session_error is not None:
            raise self.session_error
        return self.session

    def sign_in_with_password(self, credentials):
        self.signed_in.append(credentials)
        if self.sign_in_error is not None:
            raise self.sign_in_error

    def sign_up(self, payload):
        return SimpleNamespace(user=SimpleNamespace(id="new"), session=None)

    def sign_out(self):
        self.signed_out = True

    def update_user(self, attrs):
        self.updates.append(attrs)


class _ApiError(Exception):
    status = 503


def _session(user_id="u1"):
    return SimpleNamespace(user=SimpleNamespace(id=user_id), access_token="tok")


def _db(role="seller"):
    tables = {"profiles": [{"id": "u1", "full_name": "Ana", "needs_password_update": True}]}
    if role:
        tables["user_roles"] = [{"user_id": "u1", "role": role}]
    return FakeSupabase(tables)


async def _instant(_seconds):
    return None


async def _settle():
    for _ in range(10):
        await asyncio.sleep(0)


def _manager(db, auth=None, **kwargs):
    kwargs.setdefault("sleep", _instant)
    return AuthSessionManager(auth or _FakeAuth(), db, **kwargs)


@pytest.mark.anyio
async def test_initial_session_loads_profile_and_role():
    manager = _manager(_db())
    states = []
    manager.subscribe(lambda m: states.append(m.state))

    await manager.handle_auth_event("INITIAL_SESSION", _session())

    assert manager.state == AUTHENTICATED
    assert manager.role == "seller"
    assert manager.profile["full_name"] == "Ana"
    assert manager.is_seller is True
    assert states == [AUTHENTICATED]
    assert manager.cache.get_cached_data("u1")["role"] == "seller"


@pytest.mark.anyio
async def test_signed_in_with_cache_is_authenticated_immediately():
    cache = SessionCache()
    cache.set_cached_data("u1", {"id": "u1", "full_name": "Cache"}, "admin")
    manager = _manager(_db(), cache=cache)

    await manager.handle_auth_event("SIGNED_IN", _session())
    assert manager.state == AUTHENTICATED
    assert manager.role == "admin"

    await _settle()
    assert manager.role == "seller"
    assert manager.profile["full_name"] == "Ana"
    manager.close()


@pytest.mark.anyio
async def test_missing_role_is_fixed_through_edge_function():
    tokens = []

    async def fixer(token):
        tokens.append(token)
        return {"success": True, "role": "seller"}

    manager = _manager(_db(role=None), role_fixer=fixer)
    await manager.fetch_user_data("u1", "tok")

    assert tokens == ["tok"]
    assert manager.role == "seller"
    assert manager.state == AUTHENTICATED


@pytest.mark.anyio
async def test_role_fixer_failure_leaves_role_empty():
    async def fixer(token):
        raise ProviderRequestError("falhou", provider="supabase-functions", status_code=500)

    manager = _manager(_db(role=None), role_fixer=fixer)
    await manager.fetch_user_data("u1", "tok")

    assert manager.role is None
    assert manager.has_system_access is False


@pytest.mark.anyio
async def test_unexpected_role_fixer_error_still_publishes_profile():
    async def fixer(token):
        raise ValueError("resposta inesperada")

    manager = _manager(_db(role=None), role_fixer=fixer)
    await manager.fetch_user_data("u1", "tok")

    assert manager.state == AUTHENTICATED
    assert manager.profile["full_name"] == "Ana"
    assert manager.role is None
    assert manager.is_verifying_role is False


@pytest.mark.anyio
async def test_initial_session_without_user_uses_cache_marker():
    cache = SessionCache()
    cache.set_cached_data("u1", {"id": "u1", "full_name": "Ana"}, "seller")
    manager = _manager(_db(), cache=cache)

    await manager.handle_auth_event("INITIAL_SESSION", None)

    assert manager.state == AUTHENTICATED
    assert manager.profile == {"id": "u1", "full_name": "Ana"}


@pytest.mark.anyio
async def test_initial_session_without_anything_is_unauthenticated():
    manager = _manager(_db())
    await manager.handle_auth_event("INITIAL_SESSION", None)
    assert manager.state == UNAUTHENTICATED


@pytest.mark.anyio
async def test_signed_out_clears_cache():
    manager = _manager(_db())
    await manager.handle_auth_event("INITIAL_SESSION", _session())
    await manager.handle_auth_event("SIGNED_OUT", None)

    assert manager.state == UNAUTHENTICATED
    assert manager.user is None
    assert manager.cache.has_session_marker() is False


@pytest.mark.anyio
async def test_initialize_without_session_ends_unauthenticated():
    auth = _FakeAuth()
    manager = _manager(_db(), auth)
    await manager.initialize()
    await _settle()

    assert manager.state == UNAUTHENTICATED
    manager.close()
    assert auth.subscription.active is False


@pytest.mark.anyio
async def test_loading_timeout_keeps_cached_session():
    cache = SessionCache()
    cache.set_cached_data("u1", {"id": "u1"}, "seller")
    auth = _FakeAuth(session_error=_ApiError("auth indisponível"))
    manager = _manager(_db(), auth, cache=cache)

    await manager.initialize()
    assert manager.state == LOADING
    await _settle()

    assert manager.state == AUTHENTICATED
    assert manager.role == "seller"
    manager.close()


@pytest.mark.anyio
async def test_unexpected_session_error_signs_out():
    cache = SessionCache()
    cache.set_cached_data("u1", {"id": "u1"}, "seller")
    manager = _manager(_db(), _FakeAuth(session_error=RuntimeError("quebrado")), cache=cache)

    await manager.initialize()

    assert manager.state == UNAUTHENTICATED
    assert cache.cached_user_id is None
    manager.close()


@pytest.mark.anyio
async def test_sign_in_normalizes_email_and_reports_failure():
    auth = _FakeAuth(sign_in_error=RuntimeError("Invalid login credentials"))
    manager = _manager(_db(), auth)

    error = await manager.sign_in("  Ana@Loja.com ", "secret")

    assert str(error) == "Invalid login credentials"
    assert auth.signed_in == [{"email": "ana@loja.com", "password": "secret"}]
    assert manager.state == UNAUTHENTICATED


@pytest.mark.anyio
async def test_sign_up_reports_email_confirmation():
    manager = _manager(_db(), redirect_url="https://app/")
    result = await manager.sign_up("novo@loja.com", "secret", "Novo")
    assert result == {"error": None, "needs_email_confirmation": True}


@pytest.mark.anyio
async def test_sign_out_resets_everything():
    auth = _FakeAuth()
    manager = _manager(_db(), auth)
    await manager.handle_auth_event("INITIAL_SESSION", _session())

    await manager.sign_out()

    assert auth.signed_out is True
    assert manager.state == UNAUTHENTICATED
    assert manager.role is None


@pytest.mark.anyio
async def test_clear_password_update_flag():
    db = _db()
    manager = _manager(db)
    await manager.handle_auth_event("INITIAL_SESSION", _session())
    assert manager.needs_password_update is True

    await manager.clear_password_update_flag()

    assert manager.needs_password_update is False
    assert db.rows("profiles")[0]["needs_password_update"] is False


def test_from_env_uses_anon_client(monkeypatch):
    db = _db()
    db.auth = _FakeAuth()
    monkeypatch.setattr("gestor.supabase_client.create_user_client", lambda: db)

    manager = AuthSessionManager.from_env(redirect_url="https://app/")

    assert manager.state == LOADING
    assert manager.trial_days == 5
    assert manager._auth is db.auth


@pytest.mark.anyio
async def test_revoked_role_is_not_restored_from_cache():
    cache = SessionCache()
    cache.set_cached_data("u1", {"id": "u1", "full_name": "Ana"}, "admin")

    async def fixer(token):
        return {"success": False}

    await _manager(_db(role=None), cache=cache, role_fixer=fixer).fetch_user_data("u1", "tok")

    restarted = _manager(_db(role=None), cache=cache)
    await restarted.handle_auth_event("INITIAL_SESSION", None)

    assert restarted.state == AUTHENTICATED
    assert restarted.role is None
    assert restarted.is_admin is False
