from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class GestorError(Exception):
    message: str
    code: str = "gestor_error"
    transient: bool = False
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class ConfigError(GestorError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="config_error", transient=False, details=details)


class AuthError(GestorError):
    def __init__(self, message: str, *, transient: bool = False, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="auth_error", transient=transient, details=details)


class ProviderRequestError(GestorError):
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: Optional[int] = None,
        transient: bool = False,
        details: Optional[dict[str, Any]] = None,
    ):
        merged_details: dict[str, Any] = {"provider": provider}
        if status_code is not None:
            merged_details["status_code"] = status_code
        if details:
            merged_details.update(details)
        super().__init__(message=message, code="provider_request_error", transient=transient, details=merged_details)

    @property
    def status_code(self) -> Optional[int]:
        return (self.details or {}).get("status_code")


class EncryptionError(GestorError):
    def __init__(self, message: str = "Falha ao criptografar credenciais", *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="encryption_error", transient=True, details=details)


class ValidationError(GestorError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="validation_error", transient=False, details=details)


class OperationLockedError(GestorError):
    def __init__(self, operation_id: str):
        super().__init__(
            message="Operação em andamento",
            code="operation_locked",
            transient=True,
            details={"operation_id": operation_id},
        )


class ClientSaveError(GestorError):
    def __init__(self, message: str, *, rolled_back: bool = False, details: Optional[dict[str, Any]] = None):
        merged_details: dict[str, Any] = {"rolled_back": rolled_back}
        if details:
            merged_details.update(details)
        super().__init__(message=message, code="client_save_error", transient=False, details=merged_details)
        self.rolled_back = rolled_back


class RestoreError(GestorError):
    def __init__(self, message: str, *, phase: str, rolled_back: bool = False, details: Optional[dict[str, Any]] = None):
        merged_details: dict[str, Any] = {"phase": phase, "rolled_back": rolled_back}
        if details:
            merged_details.update(details)
        super().__init__(message=message, code="restore_error", transient=False, details=merged_details)
        self.phase = phase
        self.rolled_back = rolled_back


class NotFoundError(GestorError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="not_found", transient=False, details=details)
