from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from kubernetes.client import V1ConfigMap, V1ObjectMeta

from targetconfig.src.kube import secret_value

LOGGER = logging.getLogger(__name__)

CA_BUNDLE_KEY = "ca-bundle.crt"
TLS_CERT_KEY = "tls.crt"
TLS_KEY_KEY = "tls.key"

ConfigMapLookup = Callable[[str, str], Any | None]


class CertificateError(ValueError):
    """Raised when PEM data cannot be decoded into certificates or keys."""


@dataclass(frozen=True)
class ResourceLocation:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def parse_certs_pem(data: bytes | str) -> list[x509.Certificate]:
    raw = data.encode("utf-8") if isinstance(data, str) else data
    try:
        return x509.load_pem_x509_certificates(raw)
    except ValueError as exc:
        raise CertificateError(
            f"data does not contain any valid RSA or ECDSA certificates: {exc}"
        ) from exc


def encode_certificates(certs: Iterable[x509.Certificate]) -> bytes:
    return b"".join(cert.public_bytes(serialization.Encoding.PEM) for cert in certs)


def load_ca(cert_pem: bytes, key_pem: bytes) -> tuple[list[x509.Certificate], Any]:
    """Decode a signing certificate chain and its private key."""
    certs = parse_certs_pem(cert_pem)
    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError) as exc:
        raise CertificateError(f"failed to parse signing key: {exc}") from exc
    return certs, key


def filter_expired(certs: Iterable[x509.Certificate], now: datetime) -> list[x509.Certificate]:
    return [cert for cert in certs if cert.not_valid_after_utc > now]


def dedupe(certs: Iterable[x509.Certificate]) -> list[x509.Certificate]:
    """Drop byte-identical repeats, keeping the first occurrence.

    Quadratic, but bundles hold a handful of certificates.
    """
    unique: list[x509.Certificate] = []
    unique_raw: list[bytes] = []
    for cert in certs:
        raw = cert.public_bytes(serialization.Encoding.DER)
        if any(raw == seen for seen in unique_raw):
            continue
        unique.append(cert)
        unique_raw.append(raw)
    return unique


def compose_bundle(certs: Iterable[x509.Certificate], now: datetime | None = None) -> bytes:
    """Filter expired certificates, dedupe the rest in order, and PEM-encode them."""
    moment = now or datetime.now(UTC)
    return encode_certificates(dedupe(filter_expired(certs, moment)))


def _bundle_certs(config_map: Any | None, location: ResourceLocation) -> list[x509.Certificate]:
    if config_map is None:
        return []
    content = (getattr(config_map, "data", None) or {}).get(CA_BUNDLE_KEY)
    if not content:
        return []
    try:
        return parse_certs_pem(content)
    except CertificateError as exc:
        raise CertificateError(
            f"configmap/{location.name} in {location.namespace!r} is malformed: {exc}"
        ) from exc


def _bundle_config_map(destination: ResourceLocation, bundle: bytes) -> V1ConfigMap:
    return V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(namespace=destination.namespace, name=destination.name),
        data={CA_BUNDLE_KEY: bundle.decode("utf-8")},
    )


def combine_ca_bundle_config_maps(
    destination: ResourceLocation,
    lookup: ConfigMapLookup,
    *sources: ResourceLocation,
    now: datetime | None = None,
) -> V1ConfigMap:
    """Build the desired bundle ConfigMap at *destination*.

    Certificates are gathered from the destination's current bundle first,
    then from each source in the order given.  Missing ConfigMaps and empty
    bundles contribute nothing; a malformed bundle is an error.
    """
    certs: list[x509.Certificate] = []
    for location in (destination, *sources):
        certs.extend(_bundle_certs(lookup(location.namespace, location.name), location))
    return _bundle_config_map(destination, compose_bundle(certs, now))


def combine_signer_ca_bundle(
    destination: ResourceLocation,
    lookup: ConfigMapLookup,
    signer_secret: Any | None,
    now: datetime | None = None,
) -> V1ConfigMap | None:
    """Append a live signer's certificate chain to the bundle at *destination*.

    Returns ``None`` when there is no usable signer (secret absent, or either
    the certificate or the key field empty), in which case nothing is applied.
    """
    if signer_secret is None:
        return None
    cert_pem = secret_value(signer_secret, TLS_CERT_KEY)
    key_pem = secret_value(signer_secret, TLS_KEY_KEY)
    if not cert_pem or not key_pem:
        LOGGER.info("Signer secret for %s has no certificate/key yet; skipping", destination)
        return None
    signer_certs, _ = load_ca(cert_pem, key_pem)

    certs = _bundle_certs(lookup(destination.namespace, destination.name), destination)
    certs.extend(signer_certs)
    return _bundle_config_map(destination, compose_bundle(certs, now))
