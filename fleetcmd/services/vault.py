"""Credential vault: write-only store of per-server SSH secrets.

Material is kept as ``SecretStr`` so it never leaks through ``repr`` or
model dumps. Only the connection pool calls :meth:`CredentialVault.get`.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import SecretStr

from fleetcmd.config import Settings, settings
from fleetcmd.errors import NotFoundError, ValidationError
from fleetcmd.models.servers import Credential
from fleetcmd.utils.logging import get_logger

log = get_logger(__name__)


class CredentialVault:
    def __init__(self, cfg: Settings | None = None) -> None:
        self._cfg = cfg or settings
        self._store: dict[str, Credential] = {}

    def load_directory(self, directory: str | None = None) -> int:
        """Seed the vault with private key files; each file name is a ref."""
        directory = directory or self._cfg.fleet_credentials_dir
        if not directory:
            return 0
        path = Path(directory)
        if not path.is_dir():
            log.warning("vault.directory_missing", directory=directory)
            return 0
        count = 0
        for key_file in sorted(path.iterdir()):
            if not key_file.is_file() or key_file.name.startswith("."):
                continue
            self._store[key_file.name] = Credential(
                ref=key_file.name,
                private_key=SecretStr(key_file.read_text()),
            )
            count += 1
        log.info("vault.loaded", directory=str(path), count=count)
        return count

    def put(
        self,
        ref: str,
        *,
        private_key: SecretStr | str | None = None,
        password: SecretStr | str | None = None,
        passphrase: SecretStr | str | None = None,
    ) -> Credential:
        if not ref.strip():
            raise ValidationError("credential ref must not be empty")
        if private_key is None and password is None:
            raise ValidationError("a private key or a password is required")
        cred = Credential(
            ref=ref,
            private_key=_secret(private_key),
            password=_secret(password),
            passphrase=_secret(passphrase),
        )
        self._store[ref] = cred
        log.info("vault.stored", ref=ref, has_key=cred.private_key is not None)
        return cred

    def get(self, ref: str) -> Credential:
        cred = self._store.get(ref)
        if cred is None:
            raise NotFoundError(f"credential '{ref}' not found")
        return cred

    def has(self, ref: str) -> bool:
        return ref in self._store

    def delete(self, ref: str) -> bool:
        removed = self._store.pop(ref, None) is not None
        if removed:
            log.info("vault.deleted", ref=ref)
        return removed

    def refs(self) -> list[str]:
        return sorted(self._store)


def _secret(value: SecretStr | str | None) -> SecretStr | None:
    if value is None or isinstance(value, SecretStr):
        return value
    return SecretStr(value)
