from __future__ import annotations

import logging
from typing import Any

import yaml
from kubernetes.client import ApiException, CoreV1Api

from targetconfig.src.kube import EventRecorder, is_not_found
from targetconfig.src.metrics import METRICS
from targetconfig.src.synthesis import read_asset, read_config_map

LOGGER = logging.getLogger(__name__)

SERVICE_ACCOUNT_UID_ANNOTATION = "kubernetes.io/service-account.uid"
TRUSTED_CA_LABEL = "config.openshift.io/inject-trusted-cabundle"


class TokenNotPopulatedError(RuntimeError):
    """Raised when a service account token secret is not usable yet."""


def _asset_name(asset: str) -> str:
    return ((yaml.safe_load(read_asset(asset)) or {}).get("metadata") or {})["name"]


def check_service_account_token(service_account: Any, token: Any) -> None:
    """Validate that *token* is the populated token secret of *service_account*.

    Token population is asynchronous, so each failure says which stage is
    missing: not populated at all, populated for a previous incarnation of
    the service account, or populated without the fields we read.
    """
    namespace = token.metadata.namespace
    name = token.metadata.name
    annotations = token.metadata.annotations or {}

    uid = annotations.get(SERVICE_ACCOUNT_UID_ANNOTATION, "")
    if not uid:
        raise TokenNotPopulatedError(
            f"secret {namespace}/{name} hasn't been populated with SA token yet: missing SA UID"
        )
    if uid != service_account.metadata.uid:
        raise TokenNotPopulatedError(
            f"secret {namespace}/{name} hasn't been populated with current SA token yet: "
            "SA UID mismatch"
        )

    data = token.data or {}
    if not data:
        raise TokenNotPopulatedError(
            f"secret {namespace}/{name} hasn't been populated with any data yet"
        )
    if "token" not in data:
        raise TokenNotPopulatedError(
            f"secret {namespace}/{name} hasn't been populated with current SA token yet"
        )
    if "ca.crt" not in data:
        raise TokenNotPopulatedError(
            f"secret {namespace}/{name} hasn't been populated with current SA token root CA yet"
        )


def ensure_localhost_recovery_sa_token(core_api: CoreV1Api, namespace: str) -> None:
    """Fail unless the localhost recovery client has a usable token.

    Lookup errors, NotFound included, propagate unchanged.
    """
    service_account = core_api.read_namespaced_service_account(
        name=_asset_name("localhost-recovery-sa.yaml"),
        namespace=namespace,
    )
    token = core_api.read_namespaced_secret(
        name=_asset_name("localhost-recovery-token.yaml"),
        namespace=namespace,
    )
    check_service_account_token(service_account, token)


def ensure_trusted_ca_config_map(
    core_api: CoreV1Api,
    namespace: str,
    recorder: EventRecorder | None = None,
) -> bool:
    """Make sure the trusted CA ConfigMap exists and carries the injection label.

    Creates it from the template when missing and restores the label when
    someone removed or changed it.  Returns True when a write happened.
    """
    required = read_config_map(read_asset("trusted-ca-cm.yaml"))
    required.metadata.namespace = namespace
    name = required.metadata.name
    try:
        existing = core_api.read_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as exc:
        if not is_not_found(exc):
            raise
        core_api.create_namespaced_config_map(namespace=namespace, body=required)
        METRICS.resources_applied_total.labels(kind="ConfigMap", action="create").inc()
        if recorder is not None:
            recorder.event(
                "ConfigMapCreated",
                f"Created ConfigMap/{name} -n {namespace} because it was missing",
            )

        return True

    labels = dict(existing.metadata.labels or {})
    if labels.get(TRUSTED_CA_LABEL) == "true":
        return False

    LOGGER.info("Restoring %s label on ConfigMap %s/%s", TRUSTED_CA_LABEL, namespace, name)
    labels[TRUSTED_CA_LABEL] = "true"
    existing.metadata.labels = labels
    core_api.replace_namespaced_config_map(name=name, namespace=namespace, body=existing)
    METRICS.resources_applied_total.labels(kind="ConfigMap", action="update").inc()
    if recorder is not None:
        recorder.event("ConfigMapUpdated", f"Updated ConfigMap/{name} -n {namespace}")
    return True
