from __future__ import annotations

import base64
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from typing import Any

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from kubernetes.client import ApiException

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


@dataclass(frozen=True)
class IssuedCert:
    cert: x509.Certificate
    cert_pem: bytes
    key_pem: bytes


def issue_cert(
    common_name: str = "test-ca",
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> IssuedCert:
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    start = not_before or NOW - timedelta(days=1)
    end = not_after or NOW + timedelta(days=365)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(end)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return IssuedCert(
        cert=cert,
        cert_pem=cert.public_bytes(serialization.Encoding.PEM),
        key_pem=key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ),
    )


@pytest.fixture
def make_cert() -> Callable[..., IssuedCert]:
    return issue_cert


def b64(value: bytes | str) -> str:
    raw = value.encode("utf-8") if isinstance(value, str) else value
    return base64.b64encode(raw).decode("ascii")


def make_secret(
    namespace: str,
    name: str,
    data: dict[str, bytes] | None = None,
    annotations: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            namespace=namespace, name=name, labels=None, annotations=annotations
        ),
        data={key: b64(value) for key, value in (data or {}).items()} or None,
        type="Opaque",
    )


def make_config_map(
    namespace: str,
    name: str,
    data: dict[str, str] | None = None,
    labels: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(namespace=namespace, name=name, labels=labels, annotations=None),
        data=data,
    )


class FakeCoreApi:
    """In-memory stand-in for the CoreV1Api calls the controller makes."""

    def __init__(self) -> None:
        self.config_maps: dict[tuple[str, str], Any] = {}
        self.secrets: dict[tuple[str, str], Any] = {}
        self.service_accounts: dict[tuple[str, str], Any] = {}
        self.events: list[Any] = []
        self.writes: list[tuple[str, str, str]] = []
        self.read_failures: dict[tuple[str, str, str], int] = {}

    def fail_reads(self, kind: str, namespace: str, name: str, status: int = 500) -> None:
        self.read_failures[(kind, namespace, name)] = status

    def _read(self, store: dict[tuple[str, str], Any], kind: str, name: str, namespace: str) -> Any:
        status = self.read_failures.get((kind, namespace, name))
        if status is not None:
            raise ApiException(status=status, reason="boom")
        try:
            return store[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def _create(
        self, store: dict[tuple[str, str], Any], kind: str, namespace: str, body: Any
    ) -> Any:
        key = (namespace, body.metadata.name)
        if key in store:
            raise ApiException(status=409, reason="AlreadyExists")
        store[key] = body
        self.writes.append(("create", kind, f"{namespace}/{body.metadata.name}"))
        return body

    def _replace(
        self,
        store: dict[tuple[str, str], Any],
        kind: str,
        name: str,
        namespace: str,
        body: Any,
    ) -> Any:

        if (namespace, name) not in store:
            raise ApiException(status=404, reason="Not Found")
        store[(namespace, name)] = body
        self.writes.append(("update", kind, f"{namespace}/{name}"))
        return body

    def read_namespaced_config_map(self, name: str, namespace: str) -> Any:
        return self._read(self.config_maps, "configmap", name, namespace)

    def create_namespaced_config_map(self, namespace: str, body: Any) -> Any:
        return self._create(self.config_maps, "configmap", namespace, body)

    def replace_namespaced_config_map(self, name: str, namespace: str, body: Any) -> Any:
        return self._replace(self.config_maps, "configmap", name, namespace, body)

    def read_namespaced_secret(self, name: str, namespace: str) -> Any:
        return self._read(self.secrets, "secret", name, namespace)

    def create_namespaced_secret(self, namespace: str, body: Any) -> Any:
        return self._create(self.secrets, "secret", namespace, body)

    def replace_namespaced_secret(self, name: str, namespace: str, body: Any) -> Any:
        return self._replace(self.secrets, "secret", name, namespace, body)

    def read_namespaced_service_account(self, name: str, namespace: str) -> Any:
        return self._read(self.service_accounts, "serviceaccount", name, namespace)

    def create_namespaced_event(self, namespace: str, body: Any) -> Any:
        self.events.append(body)
        return body

    def add_config_map(self, config_map: Any) -> None:
        self.config_maps[(config_map.metadata.namespace, config_map.metadata.name)] = config_map

    def add_secret(self, secret: Any) -> None:
        self.secrets[(secret.metadata.namespace, secret.metadata.name)] = secret

    def add_service_account(self, namespace: str, name: str, uid: str) -> None:
        self.service_accounts[(namespace, name)] = SimpleNamespace(
            metadata=SimpleNamespace(namespace=namespace, name=name, uid=uid)
        )


@pytest.fixture
def core_api() -> FakeCoreApi:
    return FakeCoreApi()
