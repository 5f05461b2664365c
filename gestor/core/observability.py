"""
Linhas de log `evento chave=valor` com o contexto do revendedor.

O contexto carrega revendedor, instância WhatsApp, contato e sessão do bot;
telefones de contatos saem mascarados (só os 4 últimos dígitos).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

_NON_DIGITS = re.compile(r"\D")


def mask_phone(phone: Optional[str]) -> Optional[str]:
    digits = _NON_DIGITS.sub("", str(phone or ""))
    if not digits:
        return None
    return f"***{digits[-4:]}"


@dataclass(frozen=True)
class LogContext:
    seller_id: Optional[str] = None
    provider: Optional[str] = None
    instance_name: Optional[str] = None
    phone: Optional[str] = None
    client_id: Optional[str] = None
    session_id: Optional[str] = None
    correlation_id: Optional[str] = None

    def with_fields(self, **changes: Any) -> "LogContext":
        return replace(self, **changes)


def _format_value(value: Any) -> str:
    text = str(value)
    if not text or any(ch.isspace() for ch in text):
        return repr(text)
    return text


class Observability:
    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def debug(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(self._format(event, ctx=ctx, fields=fields))

    def info(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.info(self._format(event, ctx=ctx, fields=fields))

    def warning(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.warning(self._format(event, ctx=ctx, fields=fields))

    def error(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.error(self._format(event, ctx=ctx, fields=fields))

    def exception(self, event: str, *, ctx: Optional[LogContext] = None, **fields: Any) -> None:
        self._logger.exception(self._format(event, ctx=ctx, fields=fields))

    def _format(self, event: str, *, ctx: Optional[LogContext], fields: Mapping[str, Any]) -> str:
        parts: list[str] = [event]
        if ctx:
            for key, value in (
                ("seller", ctx.seller_id),
                ("provider", ctx.provider),
                ("instance", ctx.instance_name),
                ("phone", mask_phone(ctx.phone)),
                ("client", ctx.client_id),
                ("session", ctx.session_id),
                ("corr", ctx.correlation_id),
            ):
                if value:
                    parts.append(f"{key}={_format_value(value)}")
        for k, v in fields.items():
            if v is None:
                continue
            parts.append(f"{k}={_format_value(v)}")
        return " ".join(parts)
