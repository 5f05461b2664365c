"""Modelos de backup e restauração."""
from typing import Any, Dict, Literal

from pydantic import BaseModel


class BackupRestoreRequest(BaseModel):
    backup: Dict[str, Any]
    mode: Literal["append", "replace"] = "append"
