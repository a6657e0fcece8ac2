"""
Credential provider.

Each authentication method is one variant of a tagged union exposing a single
capability, ``token_source()``. The variant is selected once at setup:

    credential = resolve_task_credential(task)
    creds = credential.token_source()      # google.auth.credentials.Credentials

Key material problems surface as ConfigurationError and are never retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import google.auth
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from google.auth import compute_engine, crypt
from google.auth import exceptions as auth_exceptions
from google.auth.credentials import Credentials
from google.oauth2 import service_account
from loguru import logger

from .errors import ConfigurationError
from .models import AuthMethod, PluginTask

DEVSTORAGE_READ_WRITE = "https://www.googleapis.com/auth/devstorage.read_write"
TOKEN_URI = "https://oauth2.googleapis.com/token"


@dataclass(frozen=True)
class PrivateKeyCredential:
    """Service account e-mail plus a PKCS#12 key container."""

    service_account_email: str
    p12_keyfile: Path
    store_pass: str = "notasecret"
    key_pass: str = "notasecret"
    scopes: tuple[str, ...] = (DEVSTORAGE_READ_WRITE,)
    method: AuthMethod = field(default=AuthMethod.PRIVATE_KEY, init=False)

    def token_source(self) -> Credentials:
        try:
            data = Path(self.p12_keyfile).read_bytes()
        except OSError as exc:
            raise ConfigurationError(f"Could not read p12_keyfile {self.p12_keyfile}: {exc}") from exc

        # PKCS#12 uses one password for the store; key_pass only differs for legacy keystores
        passwords = [self.store_pass] if self.key_pass == self.store_pass else [self.store_pass, self.key_pass]
        private_key = None
        last_error: Optional[Exception] = None
        for password in passwords:
            try:
                private_key, _cert, _extra = pkcs12.load_key_and_certificates(
                    data, password.encode("utf-8") if password else None
                )
                break
            except (ValueError, TypeError) as exc:
                last_error = exc
        if private_key is None:
            raise ConfigurationError(
                f"Invalid p12_keyfile {self.p12_keyfile}: {last_error or 'no private key in container'}"
            ) from last_error

        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        try:
            signer = crypt.RSASigner.from_string(pem)
        except ValueError as exc:
            raise ConfigurationError(f"Unsupported key in p12_keyfile {self.p12_keyfile}: {exc}") from exc

        return service_account.Credentials(
            signer,
            self.service_account_email,
            TOKEN_URI,
            scopes=list(self.scopes),
        )


@dataclass(frozen=True)
class JsonKeyCredential:
    """A JSON credential document (service account or authorized user)."""

    json_keyfile: Path
    scopes: tuple[str, ...] = (DEVSTORAGE_READ_WRITE,)
    method: AuthMethod = field(default=AuthMethod.JSON_KEY, init=False)

    def token_source(self) -> Credentials:
        try:
            credentials, _project = google.auth.load_credentials_from_file(
                str(self.json_keyfile), scopes=list(self.scopes)
            )
        except (auth_exceptions.DefaultCredentialsError, ValueError, OSError) as exc:
            raise ConfigurationError(f"Invalid json_keyfile {self.json_keyfile}: {exc}") from exc
        return credentials


@dataclass(frozen=True)
class ComputeEngineCredential:
    """Token from the metadata server of the ambient execution environment.

    The first token is fetched lazily, by the first request the client factory
    makes under its retry policy.
    """

    scopes: tuple[str, ...] = (DEVSTORAGE_READ_WRITE,)
    method: AuthMethod = field(default=AuthMethod.COMPUTE_ENGINE, init=False)

    def token_source(self) -> Credentials:
        return compute_engine.Credentials(scopes=list(self.scopes))


Credential = Union[PrivateKeyCredential, JsonKeyCredential, ComputeEngineCredential]

_KEY_FIELDS = {
    AuthMethod.PRIVATE_KEY: ("p12_keyfile", "p12_keyfile_path"),
    AuthMethod.JSON_KEY: ("json_keyfile",),
    AuthMethod.COMPUTE_ENGINE: (),
}


def resolve(method: Union[AuthMethod, str], params: Mapping[str, Any]) -> Credential:
    """Pick the credential variant for ``method``; validate its fields.

    Raises ConfigurationError before any network activity when fields are
    missing, conflicting, or belong to another method.
    """
    try:
        method = AuthMethod(method)
    except ValueError as exc:
        raise ConfigurationError(
            f"Unknown auth_method '{method}'. Use one of: {', '.join(m.value for m in AuthMethod)}"
        ) from exc

    present = {k for k, v in params.items() if v is not None}

    if {"p12_keyfile", "p12_keyfile_path"} <= present:
        raise ConfigurationError("Setting both p12_keyfile_path and p12_keyfile is invalid")

    foreign = sorted(
        name
        for other, names in _KEY_FIELDS.items()
        if other is not method
        for name in names
        if name in present
    )
    if foreign:
        raise ConfigurationError(
            f"auth_method is {method.value}, but key fields of another method are set: {', '.join(foreign)}"
        )

    if method is AuthMethod.PRIVATE_KEY:
        keyfile = params.get("p12_keyfile") or params.get("p12_keyfile_path")
        email = params.get("service_account_email")
        if not keyfile or not email:
            raise ConfigurationError(
                "If auth_method is private_key, you have to set both service_account_email and p12_keyfile"
            )
        return PrivateKeyCredential(
            service_account_email=email,
            p12_keyfile=Path(keyfile),
            store_pass=params.get("store_pass") or "notasecret",
            key_pass=params.get("key_pass") or "notasecret",
        )

    if method is AuthMethod.JSON_KEY:
        keyfile = params.get("json_keyfile")
        if not keyfile:
            raise ConfigurationError("If auth_method is json_key, you have to set json_keyfile")
        if params.get("service_account_email"):
            logger.debug("service_account_email is ignored when auth_method is json_key")
        return JsonKeyCredential(json_keyfile=Path(keyfile))

    return ComputeEngineCredential()


def resolve_task_credential(task: PluginTask) -> Credential:
    return resolve(
        task.auth_method,
        {
            "service_account_email": task.service_account_email,
            "p12_keyfile": task.p12_keyfile,
            "p12_keyfile_path": task.p12_keyfile_path,
            "json_keyfile": task.json_keyfile,
            "store_pass": task.store_pass,
            "key_pass": task.key_pass,
        },
    )
