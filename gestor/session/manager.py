"""
Máquina de estados da sessão de autenticação.

Estados: `loading`, `authenticated`, `unauthenticated`. Os eventos do
Supabase Auth (SIGNED_IN, TOKEN_REFRESHED, ...) movem o estado; perfil e
papel são lidos de `profiles`/`user_roles` e guardados em `SessionCache`.
Com o marcador de sessão presente o usuário só sai por `sign_out`.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .cache import SessionCache
from .roles import ADMIN, APP_ROLES, SELLER, load_trial_days, pick_role, trial_info

logger = logging.getLogger(__name__)

LOADING = "loading"
AUTHENTICATED = "authenticated"
UNAUTHENTICATED = "unauthenticated"

LOADING_TIMEOUT_S = 12.0
NO_SESSION_GRACE_S = 1.0

RoleFixer = Callable[[str], Awaitable[Any]]
Listener = Callable[["AuthSessionManager"], None]


def _user_of(session: Any) -> Any:
    return getattr(session, "user", None) if session is not None else None


def _access_token(session: Any) -> Optional[str]:
    return getattr(session, "access_token", None) if session is not None else None


async def _edge_role_fixer(access_token: str) -> Any:
    from ..edge_functions import EdgeFunctionClient
    from ..supabase_client import SUPABASE_URL

    return await EdgeFunctionClient(base_url=SUPABASE_URL, token=access_token).call("fix-user-roles", {})


class AuthSessionManager:
    def __init__(
        self,
        auth: Any,
        db: Any,
        *,
        cache: Optional[SessionCache] = None,
        role_fixer: RoleFixer = _edge_role_fixer,
        redirect_url: str = "",
        loading_timeout_s: float = LOADING_TIMEOUT_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._auth = auth
        self._db = db
        self.cache = cache or SessionCache()
        self._role_fixer = role_fixer
        self._redirect_url = redirect_url
        self._loading_timeout_s = loading_timeout_s
        self._sleep = sleep

        self.state = LOADING
        self.session: Any = None
        self.user: Any = None
        self.profile: Optional[Dict[str, Any]] = None
        self.role: Optional[str] = None
        self.is_verifying_role = False
        self.trial_days = load_trial_days(db)

        self._fetching = False
        self._listeners: List[Listener] = []
        self._tasks: "set[asyncio.Task[Any]]" = set()
        self._subscription: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @classmethod
    def from_env(cls, *, cache: Optional[SessionCache] = None, redirect_url: str = "") -> "AuthSessionManager":
        """Manager sobre um cliente com a chave anon (login e cadastro do próprio usuário)."""
        from ..supabase_client import create_user_client

        client = create_user_client()
        return cls(client.auth, client, cache=cache, redirect_url=redirect_url)

    # ---- observadores ----

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _set_state(self, state: str) -> None:
        changed = state != self.state
        self.state = state
        if changed:
            logger.info(f"[auth] estado -> {state}")
            for listener in list(self._listeners):
                listener(self)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _apply_cache(self, user_id: str) -> Dict[str, Any]:
        cached = self.cache.get_cached_data(user_id)
        if cached["profile"]:
            self.profile = cached["profile"]
        if cached["role"]:
            self.role = cached["role"]
        return cached

    def _reset(self) -> None:
        self.session = None
        self.user = None
        self.profile = None
        self.role = None

    # ---- eventos ----

    async def handle_auth_event(self, event: str, session: Any) -> None:
        user = _user_of(session)
        logger.info(f"[auth] evento {event}")

        if event == "SIGNED_OUT":
            self._reset()
            self.cache.clear_auth_cache()
            self._set_state(UNAUTHENTICATED)
            return

        if event in ("SIGNED_IN", "TOKEN_REFRESHED", "USER_UPDATED"):
            if user is None:
                return
            self.session, self.user = session, user
            cached = self._apply_cache(user.id)
            self.cache.set_session_marker()
            self._spawn(self.fetch_user_data(user.id, _access_token(session)))
            if cached["profile"] and cached["role"]:
                self._set_state(AUTHENTICATED)
            return

        if event == "INITIAL_SESSION":
            if user is not None:
                self.session, self.user = session, user
                self._apply_cache(user.id)
                self.cache.set_session_marker()
                await self.fetch_user_data(user.id, _access_token(session))
                self._set_state(AUTHENTICATED)
                return
            cached_user_id = self.cache.cached_user_id
            if self.cache.has_session_marker() and cached_user_id:
                self._apply_cache(cached_user_id)
                self._set_state(AUTHENTICATED)
                return
            self._set_state(UNAUTHENTICATED)
            return

        if user is not None:
            self.session, self.user = session, user

    def _on_auth_change(self, event: Any, session: Any) -> None:
        name = getattr(event, "value", event)
        coro = self.handle_auth_event(str(name), session)
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is not None and running is not loop:
            loop.call_soon_threadsafe(self._spawn, coro)
        else:
            self._spawn(coro)

    async def initialize(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._spawn(self._loading_timeout())
        self._subscription = self._auth.on_auth_state_change(self._on_auth_change)

        try:
            session = self._auth.get_session()
        except Exception as e:
            logger.error(f"[auth] erro ao obter sessão: {e}")
            # erros da API do Auth trazem `status`; nesses o timeout decide pelo cache
            if getattr(e, "status", None) is None:
                self.cache.clear_auth_cache()
                self._set_state(UNAUTHENTICATED)
            return

        if session is None and self.state == LOADING:
            self._spawn(self._no_session_fallback())

    async def _no_session_fallback(self) -> None:
        await self._sleep(NO_SESSION_GRACE_S)
        if self.state == LOADING:
            self._set_state(UNAUTHENTICATED)

    async def _loading_timeout(self) -> None:
        await self._sleep(self._loading_timeout_s)
        if self.state != LOADING:
            return
        cached_user_id = self.cache.cached_user_id
        if self.cache.has_session_marker() and cached_user_id:
            logger.info("[auth] timeout com cache; mantendo sessão")
            self._apply_cache(cached_user_id)
            self._set_state(AUTHENTICATED)
            self._spawn(self._restore_session())
        else:
            self._set_state(UNAUTHENTICATED)

    async def _restore_session(self) -> None:
        try:
            session = self._auth.get_session()
        except Exception as e:
            logger.info(f"[auth] restauração em segundo plano falhou: {e}")
            return
        if session is not None:
            self.session, self.user = session, _user_of(session)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        for task in list(self._tasks):
            task.cancel()

    # ---- dados do usuário ----

    def _read_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        rows = self._db.table("profiles").select("*").eq("id", user_id).limit(1).execute().data or []
        return rows[0] if rows else None

    async def fetch_user_data(self, user_id: str, access_token: Optional[str] = None) -> None:
        if self._fetching:
            return
        self._fetching = True
        self.is_verifying_role = True
        try:
            profile = self._read_profile(user_id)
            role_rows = self._db.table("user_roles").select("role").eq("user_id", user_id).execute().data or []
            role = pick_role(role_rows)

            if role is None and access_token:
                logger.info("[auth] usuário sem papel; tentando corrigir")
                try:
                    fixed = await self._role_fixer(access_token)
                except Exception as e:
                    logger.error(f"[auth] falha ao corrigir papel: {e}")
                    fixed = None
                if isinstance(fixed, dict) and fixed.get("role") in APP_ROLES:
                    role = fixed["role"]
                    profile = self._read_profile(user_id) or profile

            self.profile = profile
            self.role = role
            self.cache.set_cached_data(user_id, profile, role)
            self._set_state(AUTHENTICATED)
        except Exception:
            logger.exception("[auth] erro ao buscar dados do usuário")
        finally:
            self._fetching = False
            self.is_verifying_role = False

    # ---- ações ----

    async def sign_in(self, email: str, password: str) -> Optional[Exception]:
        self.cache.clear_auth_cache()
        self._set_state(LOADING)
        try:
            self._auth.sign_in_with_password({"email": email.strip().lower(), "password": password})
        except Exception as e:
            self._set_state(UNAUTHENTICATED)
            return e
        return None

    async def sign_up(self, email: str, password: str, full_name: str, whatsapp: Optional[str] = None) -> Dict[str, Any]:
        try:
            res = self._auth.sign_up(
                {
                    "email": email.strip().lower(),
                    "password": password,
                    "options": {
                        "email_redirect_to": self._redirect_url,
                        "data": {"full_name": full_name, "whatsapp": whatsapp or None},
                    },
                }
            )
        except Exception as e:
            return {"error": e, "needs_email_confirmation": False}
        needs_confirmation = getattr(res, "user", None) is not None and getattr(res, "session", None) is None
        return {"error": None, "needs_email_confirmation": needs_confirmation}

    async def sign_out(self) -> None:
        self.cache.clear_auth_cache()
        self._set_state(LOADING)
        try:
            self._auth.sign_out()
        finally:
            self._reset()
            self._set_state(UNAUTHENTICATED)

    async def update_password(self, new_password: str) -> Optional[Exception]:
        try:
            self._auth.update_user({"password": new_password})
        except Exception as e:
            return e
        return None

    async def clear_password_update_flag(self) -> None:
        if self.user is None:
            return
        self._db.table("profiles").update({"needs_password_update": False}).eq("id", self.user.id).execute()
        if self.profile is not None:
            self.profile = {**self.profile, "needs_password_update": False}
            self.cache.set_cached_data(self.user.id, self.profile, self.role)

    # ---- derivados ----

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    @property
    def is_seller(self) -> bool:
        return self.role == SELLER

    @property
    def trial(self) -> Dict[str, Any]:
        return trial_info(self.profile, self.role, self.trial_days)

    @property
    def has_system_access(self) -> bool:
        return self.is_verifying_role or self.is_admin or self.is_seller or self.trial["is_in_trial"]

    @property
    def needs_password_update(self) -> bool:
        return bool((self.profile or {}).get("needs_password_update", False))
