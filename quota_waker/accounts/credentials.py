"""
Credential store поверх StateStore.

Хранит OAuth credentials аккаунтов (по email) и активный аккаунт.
Шифрование и OAuth flow — вне этого модуля.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from quota_waker.storage import ACTIVE_ACCOUNT_KEY, CREDENTIALS_KEY, StateStore


@dataclass
class Credential:
    """OAuth credential одного аккаунта."""

    email: str
    access_token: str = ""
    refresh_token: str = ""
    expires_at: float = 0.0               # unix seconds
    project_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        return cls(
            email=data["email"],
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token", ""),
            expires_at=float(data.get("expires_at") or 0),
            project_id=data.get("project_id"),
        )


@runtime_checkable
class CredentialStore(Protocol):
    """Контракт хранилища credentials."""

    def get_active_account(self) -> str | None: ...
    def set_active_account(self, email: str | None) -> None: ...
    def list_credentials(self) -> list[Credential]: ...
    def get_credential(self, email: str) -> Credential | None: ...
    def save_credential(self, credential: Credential) -> None: ...
    def update_project_id(self, email: str, project_id: str) -> None: ...
    def delete_credential(self, email: str) -> bool: ...


class StoredCredentials:
    """Credentials в StateStore под ключом `credentials`."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def _load(self) -> dict[str, dict[str, Any]]:
        return self._store.get(CREDENTIALS_KEY, {}) or {}

    def get_active_account(self) -> str | None:
        return self._store.get(ACTIVE_ACCOUNT_KEY)

    def set_active_account(self, email: str | None) -> None:
        if email is None:
            self._store.delete(ACTIVE_ACCOUNT_KEY)
        else:
            self._store.set(ACTIVE_ACCOUNT_KEY, email)

    def list_credentials(self) -> list[Credential]:
        return [Credential.from_dict(data) for data in self._load().values()]

    def get_credential(self, email: str) -> Credential | None:
        data = self._load().get(email)
        return Credential.from_dict(data) if data else None

    def save_credential(self, credential: Credential) -> None:
        creds = self._load()
        creds[credential.email] = credential.to_dict()
        self._store.set(CREDENTIALS_KEY, creds)

    def update_project_id(self, email: str, project_id: str) -> None:
        credential = self.get_credential(email)
        if credential is None:
            return
        credential.project_id = project_id
        self.save_credential(credential)

    def delete_credential(self, email: str) -> bool:
        creds = self._load()
        if creds.pop(email, None) is None:
            return False
        self._store.set(CREDENTIALS_KEY, creds)
        logger.info(f"Credential deleted: {email}")
        return True
