from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from typing import Protocol

    class YAMLValidationError(Exception):
        pass

    class _YamlDoc(Protocol):
        data: Any

    def load_yaml(_text: str) -> _YamlDoc:
        raise NotImplementedError
else:
    from strictyaml import YAMLValidationError, load as load_yaml

from .backoff import BackoffConfig
from .errors import ConfigError


@dataclass(frozen=True)
class BotConfig:
    """Ajustes por implantação do chatbot (textos dos estados e backoff do monitor)."""

    state_messages: dict[str, str] = field(default_factory=dict)
    monitor_backoff: Optional[BackoffConfig] = None
    heartbeat_interval_s: float = 60.0
    interactive_menus: bool = True


def load_bot_config() -> BotConfig:
    inline = (os.getenv("GESTOR_BOT_CONFIG_INLINE") or "").strip()
    path = (os.getenv("GESTOR_BOT_CONFIG") or "").strip()

    if inline:
        data = _parse_text(inline)
    elif path:
        data = _parse_file(path)
    else:
        data = {}

    return BotConfig(
        state_messages=_parse_state_messages(data),
        monitor_backoff=_parse_backoff(data.get("monitor_backoff") or data.get("backoff")),
        heartbeat_interval_s=_to_float(data.get("heartbeat_interval_s"), 60.0, field_name="heartbeat_interval_s"),
        interactive_menus=_to_bool(data.get("interactive_menus"), True, field_name="interactive_menus"),
    )


def _parse_file(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except Exception as e:
        raise ConfigError("Falha ao ler arquivo de configuração.", details={"path": path, "error": str(e)})
    return _parse_text(text, source=path)


def _parse_text(text: str, source: str = "inline") -> dict[str, Any]:
    raw = (text or "").lstrip()
    if not raw:
        return {}
    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except Exception as e:
            raise ConfigError("JSON inválido em configuração.", details={"source": source, "error": str(e)})
    else:
        try:
            y = load_yaml(raw)
            data = y.data
        except YAMLValidationError as e:
            raise ConfigError("YAML inválido em configuração.", details={"source": source, "error": str(e)})
    if not isinstance(data, dict):
        raise ConfigError("Configuração deve ser um mapa.", details={"source": source, "type": str(type(data))})
    return data


def _parse_state_messages(data: dict[str, Any]) -> dict[str, str]:
    raw = data.get("state_messages") or data.get("messages") or {}
    if not isinstance(raw, dict):
        raise ConfigError("Campo state_messages deve ser um mapa.", details={"type": str(type(raw))})
    out: dict[str, str] = {}
    for state, message in raw.items():
        key = str(state or "").strip().upper()
        text = str(message or "").strip()
        if key and text:
            out[key] = text
    return out


def _parse_backoff(raw: Any) -> Optional[BackoffConfig]:
    if not raw:
        return None
    if not isinstance(raw, dict):
        raise ConfigError("Campo monitor_backoff deve ser um mapa.", details={"type": str(type(raw))})
    defaults = BackoffConfig()
    return BackoffConfig(
        base_delay_ms=_to_float(raw.get("base_delay_ms"), defaults.base_delay_ms, field_name="base_delay_ms"),
        max_delay_ms=_to_float(raw.get("max_delay_ms"), defaults.max_delay_ms, field_name="max_delay_ms"),
        max_attempts=int(_to_float(raw.get("max_attempts"), defaults.max_attempts, field_name="max_attempts")),
        jitter_factor=_to_float(raw.get("jitter_factor"), defaults.jitter_factor, field_name="jitter_factor"),
        backoff_factor=_to_float(raw.get("backoff_factor"), defaults.backoff_factor, field_name="backoff_factor"),
    )


def _to_float(value: Any, default: float, *, field_name: str) -> float:
    # strictyaml devolve escalares como str
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError("Valor numérico inválido em configuração.", details={"field": field_name, "value": str(value)})


def _to_bool(value: Any, default: bool, *, field_name: str) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "on", "1", "sim"):
        return True
    if text in ("false", "no", "off", "0", "nao", "não"):
        return False
    raise ConfigError("Valor booleano inválido em configuração.", details={"field": field_name, "value": str(value)})
