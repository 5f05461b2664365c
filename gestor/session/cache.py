"""
Cache de perfil/papel do usuário autenticado.

Guarda o último perfil e papel conhecidos para que uma sessão possa ser
restaurada mesmo quando o Auth demora a responder.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

CACHED_PROFILE = "auth_cached_profile"
CACHED_ROLE = "auth_cached_role"
CACHED_USER_ID = "auth_cached_user_id"
SESSION_ACTIVE = "auth_session_active"

ALL_KEYS = (CACHED_PROFILE, CACHED_ROLE, CACHED_USER_ID, SESSION_ACTIVE)


class Storage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """Um arquivo JSON com todas as chaves; gravação via arquivo temporário."""

    def __init__(self, path: str):
        self._path = path
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, str]:
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Cache de sessão ilegível ({self._path}): {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = f"{self._path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
        os.replace(tmp, self._path)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._read().get(key)
        return None if value is None else str(value)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._read()
            data[key] = value
            self._write(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)


class SessionCache:
    def __init__(self, storage: Optional[Storage] = None):
        self._storage = storage or MemoryStorage()

    @property
    def cached_user_id(self) -> Optional[str]:
        return self._storage.get(CACHED_USER_ID)

    def has_session_marker(self) -> bool:
        return self._storage.get(SESSION_ACTIVE) == "true"

    def set_session_marker(self) -> None:
        self._storage.set(SESSION_ACTIVE, "true")

    def get_cached_data(self, user_id: str) -> Dict[str, Any]:
        """`{profile, role}` do cache; vazio (e cache limpo) se for de outro usuário."""
        empty: Dict[str, Any] = {"profile": None, "role": None}
        cached_user = self._storage.get(CACHED_USER_ID)
        if cached_user and cached_user != user_id:
            self.clear_auth_cache()
            return empty

        try:
            raw_profile = self._storage.get(CACHED_PROFILE)
            profile = json.loads(raw_profile) if raw_profile else None
        except ValueError:
            logger.warning("Perfil em cache inválido; limpando")
            self.clear_auth_cache()
            return empty

        if profile and str(profile.get("id") or "") != user_id:
            self.clear_auth_cache()
            return empty
        return {"profile": profile, "role": self._storage.get(CACHED_ROLE)}

    def set_cached_data(self, user_id: str, profile: Optional[Dict[str, Any]], role: Optional[str]) -> None:
        self._storage.set(CACHED_USER_ID, user_id)
        self.set_session_marker()
        if profile is not None:
            self._storage.set(CACHED_PROFILE, json.dumps(profile, ensure_ascii=False, default=str))
        else:
            self._storage.remove(CACHED_PROFILE)
        if role:
            self._storage.set(CACHED_ROLE, role)
        else:
            # papel revogado não pode sobreviver no cache
            self._storage.remove(CACHED_ROLE)

    def clear_auth_cache(self) -> None:
        for key in ALL_KEYS:
            self._storage.remove(key)
