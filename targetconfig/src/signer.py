from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from kubernetes.client import CoreV1Api, V1ObjectMeta, V1Secret

from targetconfig.src.cabundle import (
    TLS_CERT_KEY,
    TLS_KEY_KEY,
    CertificateError,
    encode_certificates,
    load_ca,
)
from targetconfig.src.kube import (
    EventRecorder,
    apply_secret,
    encode_secret_data,
    read_or_none,
    secret_value,
)
from targetconfig.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)

# Dependents (the API server's trust bundle in particular) need time to pick
# up a new signer before certificates it issues are relied upon.
PROMOTION_GRACE_PERIOD = timedelta(minutes=5)
REQUEUE_MARGIN = timedelta(seconds=10)
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)

SIGNER_SECRET_NAME = "csr-signer"


@dataclass(frozen=True)
class SigningCertKeyPair:
    """A usable signer: the leading certificate re-encoded, its key, and its validity window."""

    cert_bytes: bytes
    key_bytes: bytes
    not_before: datetime
    not_after: datetime


class RotationAction(enum.Enum):
    NOOP = "noop"
    PROMOTE = "promote"
    WAIT = "wait"


@dataclass(frozen=True)
class RotationDecision:
    action: RotationAction
    reason: str
    delay: timedelta = timedelta(0)


@dataclass(frozen=True)
class SignerResult:
    """Outcome of one signer rotation pass.

    ``requeue_after`` is zero unless promotion is waiting on the grace period.
    """

    secret: Any | None
    requeue_after: timedelta
    modified: bool


def extract_signer(secret: Any | None) -> SigningCertKeyPair | None:
    """Return the signer held by *secret*, or ``None`` if it holds none.

    A secret with an empty certificate or key field is treated as having no
    signer.  Data that is present but does not decode raises
    :class:`CertificateError`.
    """
    if secret is None:
        return None
    cert_pem = secret_value(secret, TLS_CERT_KEY)
    if not cert_pem:
        return None
    key_pem = secret_value(secret, TLS_KEY_KEY)
    if not key_pem:
        return None
    certs, _ = load_ca(cert_pem, key_pem)
    # The CSR signing controller accepts exactly one certificate, never a chain.
    leading = certs[0]
    return SigningCertKeyPair(
        cert_bytes=encode_certificates([leading]),
        key_bytes=key_pem,
        not_before=leading.not_valid_before_utc,
        not_after=leading.not_valid_after_utc,
    )


def decide_rotation(
    source: SigningCertKeyPair | None,
    deployed: SigningCertKeyPair | None,
    deployed_found: bool,
    now: datetime,
) -> RotationDecision:
    """Choose whether to promote *source* over the deployed signer.

    Rules are checked in order: no source is a no-op; a deployed secret that
    does not exist, or whose signer has already expired, is replaced at
    once; otherwise promotion waits until ``source.not_before`` plus the
    grace period, and the returned delay overshoots that moment slightly.
    """
    if source is None:
        return RotationDecision(RotationAction.NOOP, "no source signer")
    if not deployed_found:
        return RotationDecision(RotationAction.PROMOTE, "deployed signer missing")

    use_after = source.not_before + PROMOTION_GRACE_PERIOD
    use_before = deployed.not_after if deployed is not None else EPOCH
    if use_before < now:
        return RotationDecision(RotationAction.PROMOTE, "deployed signer expired")
    if now >= use_after:
        return RotationDecision(RotationAction.PROMOTE, "grace period elapsed")
    return RotationDecision(
        RotationAction.WAIT,
        "grace period not elapsed",
        delay=(use_after - now) + REQUEUE_MARGIN,
    )


def manage_csr_signer(
    core_api: CoreV1Api,
    source_namespace: str,
    target_namespace: str,
    recorder: EventRecorder | None = None,
    now: datetime | None = None,
) -> SignerResult:
    """Promote the operator's signer into the target namespace when it is safe to."""
    moment = now or datetime.now(UTC)

    source_secret = read_or_none(
        core_api.read_namespaced_secret, source_namespace, SIGNER_SECRET_NAME
    )
    source = extract_signer(source_secret)

    deployed_secret = read_or_none(
        core_api.read_namespaced_secret, target_namespace, SIGNER_SECRET_NAME
    )
    deployed: SigningCertKeyPair | None = None
    try:
        deployed = extract_signer(deployed_secret)
    except CertificateError as exc:
        LOGGER.warning(
            "Deployed signer %s/%s does not decode, treating it as expired: %s",
            target_namespace,
            SIGNER_SECRET_NAME,
            exc,
        )

    decision = decide_rotation(source, deployed, deployed_secret is not None, moment)
    if decision.action is RotationAction.NOOP:
        METRICS.signer_wait_seconds.set(0)
        return SignerResult(secret=None, requeue_after=timedelta(0), modified=False)
    if decision.action is RotationAction.WAIT:
        LOGGER.info(
            "Signer %s/%s not promoted yet (%s); checking again in %.0fs",
            source_namespace,
            SIGNER_SECRET_NAME,
            decision.reason,
            decision.delay.total_seconds(),
        )
        METRICS.signer_wait_seconds.set(decision.delay.total_seconds())
        return SignerResult(secret=None, requeue_after=decision.delay, modified=False)

    METRICS.signer_wait_seconds.set(0)
    required = V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(namespace=target_namespace, name=SIGNER_SECRET_NAME),
        data=encode_secret_data({TLS_CERT_KEY: source.cert_bytes, TLS_KEY_KEY: source.key_bytes}),
    )
    secret, modified = apply_secret(core_api, required, recorder)
    if modified:
        LOGGER.info(
            "Promoted signer into %s/%s (%s)",
            target_namespace,
            SIGNER_SECRET_NAME,
            decision.reason,
        )

        METRICS.signer_promotions_total.inc()
    return SignerResult(secret=secret, requeue_after=timedelta(0), modified=modified)
