from __future__ import annotations

import base64
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    CustomObjectsApi,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)
from kubernetes.config.config_exception import ConfigException

from targetconfig.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def read_or_none(read_fn: Callable[..., Any], namespace: str, name: str) -> Any | None:
    """Call a namespaced ``read_*`` function, mapping 404 to ``None``.

    Any other API error propagates so callers can tell "absent" apart from
    "could not look".
    """
    try:
        return read_fn(name=name, namespace=namespace)
    except ApiException as exc:
        if is_not_found(exc):
            return None
        raise


def secret_value(secret: Any, key: str) -> bytes:
    """Return the decoded bytes stored under *key* in a Secret, or ``b""``.

    The Kubernetes API transports Secret ``data`` values as base64 text.
    """
    data = getattr(secret, "data", None) or {}
    encoded = data.get(key)
    if not encoded:
        return b""
    return base64.b64decode(encoded)


def encode_secret_data(values: dict[str, bytes]) -> dict[str, str]:
    return {key: base64.b64encode(value).decode("ascii") for key, value in values.items()}


class EventRecorder:
    """Write core/v1 Events describing what the controller did.

    Events are best-effort: a failure to record one is logged and swallowed
    so observability never fails a reconcile cycle.
    """

    def __init__(
        self,
        core_api: CoreV1Api | None,
        namespace: str,
        component: str,
        involved_object: V1ObjectReference | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.component = component
        self.involved_object = involved_object or V1ObjectReference(
            kind="Deployment",
            namespace=namespace,
            name="kube-controller-manager-operator",
            api_version="apps/v1",
        )
        self.logger = logger or logging.getLogger(__name__)

    def event(self, reason: str, message: str) -> None:
        self.logger.info("Event %s: %s", reason, message)
        self._emit("Normal", reason, message)

    def warning(self, reason: str, message: str) -> None:
        self.logger.warning("Event %s: %s", reason, message)
        self._emit("Warning", reason, message)

    def _emit(self, event_type: str, reason: str, message: str) -> None:
        if self.core_api is None:
            return
        now = datetime.now(UTC)
        body = CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{self.involved_object.name}.",
                namespace=self.namespace,
            ),
            involved_object=self.involved_object,
            reason=reason,
            message=message,
            type=event_type,
            count=1,
            first_timestamp=now,
            last_timestamp=now,
            source=V1EventSource(component=self.component),
        )
        try:
            self.core_api.create_namespaced_event(namespace=self.namespace, body=body)
        except ApiException as exc:
            self.logger.warning("Failed to record event %s: %s", reason, exc.reason)
        except Exception:
            self.logger.warning("Failed to record event %s", reason, exc_info=True)


def _merged_map(existing: dict[str, str] | None, required: dict[str, str] | None) -> dict[str, str]:
    return {**(existing or {}), **(required or {})}


def _metadata_changed(
    existing_meta: Any,
    required_meta: Any,
) -> tuple[bool, dict[str, str], dict[str, str]]:
    """Merge required labels/annotations over existing ones and report whether anything moved."""
    existing_labels = getattr(existing_meta, "labels", None) or {}
    existing_annotations = getattr(existing_meta, "annotations", None) or {}
    labels = _merged_map(existing_labels, getattr(required_meta, "labels", None))
    annotations = _merged_map(existing_annotations, getattr(required_meta, "annotations", None))
    changed = labels != existing_labels or annotations != existing_annotations
    return changed, labels, annotations


def apply_config_map(
    core_api: CoreV1Api,
    required: Any,
    recorder: EventRecorder | None = None,
) -> tuple[Any, bool]:
    """Create, update, or leave alone a ConfigMap so it matches *required*.

    Labels and annotations on the live object are merged with the required
    ones (foreign keys survive), ``data`` is replaced wholesale.  Returns the
    resulting object and whether a write happened.
    """
    namespace = required.metadata.namespace
    name = required.metadata.name
    existing = read_or_none(core_api.read_namespaced_config_map, namespace, name)
    if existing is None:
        created = core_api.create_namespaced_config_map(namespace=namespace, body=required)
        METRICS.resources_applied_total.labels(kind="ConfigMap", action="create").inc()
        if recorder is not None:
            recorder.event(
                "ConfigMapCreated",
                f"Created ConfigMap/{name} -n {namespace} because it was missing",
            )
        return created, True

    metadata_changed, labels, annotations = _metadata_changed(existing.metadata, required.metadata)
    data_changed = (existing.data or {}) != (required.data or {})
    if not metadata_changed and not data_changed:
        return existing, False

    existing.metadata.labels = labels
    existing.metadata.annotations = annotations
    existing.data = dict(required.data or {})
    updated = core_api.replace_namespaced_config_map(name=name, namespace=namespace, body=existing)
    METRICS.resources_applied_total.labels(kind="ConfigMap", action="update").inc()
    if recorder is not None:
        recorder.event("ConfigMapUpdated", f"Updated ConfigMap/{name} -n {namespace}")
    return updated, True


def apply_secret(
    core_api: CoreV1Api,
    required: Any,
    recorder: EventRecorder | None = None,
) -> tuple[Any, bool]:
    """Secret counterpart of :func:`apply_config_map`.

    ``type`` is only compared when the required object sets one, because the
    API server defaults it to ``Opaque``.
    """
    namespace = required.metadata.namespace
    name = required.metadata.name
    existing = read_or_none(core_api.read_namespaced_secret, namespace, name)
    if existing is None:
        created = core_api.create_namespaced_secret(namespace=namespace, body=required)
        METRICS.resources_applied_total.labels(kind="Secret", action="create").inc()
        if recorder is not None:
            recorder.event(
                "SecretCreated",
                f"Created Secret/{name} -n {namespace} because it was missing",
            )

        return created, True

    metadata_changed, labels, annotations = _metadata_changed(existing.metadata, required.metadata)
    data_changed = (existing.data or {}) != (required.data or {})
    type_changed = required.type is not None and existing.type != required.type
    if not metadata_changed and not data_changed and not type_changed:
        return existing, False

    existing.metadata.labels = labels
    existing.metadata.annotations = annotations
    existing.data = dict(required.data or {})
    if required.type is not None:
        existing.type = required.type
    updated = core_api.replace_namespaced_secret(name=name, namespace=namespace, body=existing)
    METRICS.resources_applied_total.labels(kind="Secret", action="update").inc()
    if recorder is not None:
        recorder.event("SecretUpdated", f"Updated Secret/{name} -n {namespace}")
    return updated, True
