"""
Entrega multi-formato: tenta as variantes de botões/lista em ordem e cai
para texto simples quando nenhuma é aceita.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..bot.interactive import deserialize_response
from ..core.errors import GestorError
from ..core.observability import LogContext, Observability
from .client import EvolutionClient
from .payloads import (
    ButtonsMessage,
    InteractiveList,
    build_send_buttons_variants,
    build_send_list_variants,
    buttons_to_text_fallback,
    list_to_text_fallback,
)

logger = logging.getLogger(__name__)

EMPTY_BUTTONS_MARKER = '"buttonParamsJson":"{}"'


@dataclass
class DeliveryResult:
    success: bool
    mode: str
    variant: Optional[str] = None
    number: Optional[str] = None
    attempts: List[Dict[str, Any]] = field(default_factory=list)


def _has_empty_buttons(response: Any) -> bool:
    if isinstance(response, dict) and isinstance(response.get("raw_text"), str):
        return EMPTY_BUTTONS_MARKER in response["raw_text"]
    try:
        return EMPTY_BUTTONS_MARKER in json.dumps(response, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError):
        return False


class MessageDelivery:
    def __init__(self, client: EvolutionClient, instance_name: str, *, obs: Optional[Observability] = None):
        self._client = client
        self._instance = instance_name
        self._obs = obs or Observability(logger)
        self._ctx = LogContext(provider="evolution", instance_name=instance_name)

    async def send_text(self, phone: str, text: str) -> DeliveryResult:
        number = await self._client.send_text_to_variants(self._instance, phone, text)
        return DeliveryResult(success=number is not None, mode="text", number=number)

    async def _fallback(self, phone: str, text: str, attempts: List[Dict[str, Any]]) -> DeliveryResult:
        self._obs.warning("evolution.delivery.text_fallback", ctx=self._ctx, attempts=len(attempts))
        try:
            number = await self._client.send_text_to_variants(self._instance, phone, text)
        except GestorError as e:
            attempts.append({"variant": "text_fallback", "ok": False, "error": str(e)})
            return DeliveryResult(success=False, mode="text_fallback", attempts=attempts)
        attempts.append({"variant": "text_fallback", "ok": number is not None})
        return DeliveryResult(success=number is not None, mode="text_fallback", number=number, attempts=attempts)

    async def send_buttons(self, phone: str, message: ButtonsMessage) -> DeliveryResult:
        attempts: List[Dict[str, Any]] = []
        for variant in build_send_buttons_variants(message, phone):
            try:
                response = await self._client.send_buttons_payload(self._instance, variant.payload)
            except GestorError as e:
                attempts.append({"variant": variant.name, "ok": False, "error": str(e)})
                continue
            if _has_empty_buttons(response):
                # aceito pela API mas os botões chegariam sem texto
                attempts.append({"variant": variant.name, "ok": False, "error": "empty buttonParamsJson"})
                continue
            attempts.append({"variant": variant.name, "ok": True})
            self._obs.info("evolution.delivery.buttons_sent", ctx=self._ctx, variant=variant.name)
            return DeliveryResult(success=True, mode="buttons", variant=variant.name, number=phone, attempts=attempts)
        return await self._fallback(phone, buttons_to_text_fallback(message), attempts)

    async def send_list(self, phone: str, lst: InteractiveList) -> DeliveryResult:
        attempts: List[Dict[str, Any]] = []
        for variant in build_send_list_variants(lst, phone):
            try:
                await self._client.send_list_payload(self._instance, variant.payload)
            except GestorError as e:
                attempts.append({"variant": variant.name, "ok": False, "error": str(e)})
                continue
            attempts.append({"variant": variant.name, "ok": True})
            self._obs.info("evolution.delivery.list_sent", ctx=self._ctx, variant=variant.name)
            return DeliveryResult(success=True, mode="list", variant=variant.name, number=phone, attempts=attempts)
        return await self._fallback(phone, list_to_text_fallback(lst), attempts)

    async def send_structured(self, phone: str, raw: str) -> DeliveryResult:
        structured = deserialize_response(raw)
        if structured is None:
            return await self.send_text(phone, raw)
        if structured.type == "list" and structured.list is not None:
            return await self.send_list(phone, structured.list)
        return await self.send_text(phone, structured.text or "")
