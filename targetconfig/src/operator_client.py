from __future__ import annotations

import enum
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import CustomObjectsApi

LOGGER = logging.getLogger(__name__)

OPERATOR_GROUP = "operator.openshift.io"
OPERATOR_VERSION = "v1"
OPERATOR_PLURAL = "kubecontrollermanagers"
OPERATOR_RESOURCE_NAME = "cluster"


def utc_now_rfc3339() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ManagementState(enum.Enum):
    MANAGED = "Managed"
    UNMANAGED = "Unmanaged"
    REMOVED = "Removed"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: str | None) -> ManagementState:
        for state in cls:
            if state is not cls.UNKNOWN and state.value == value:
                return state
        return cls.UNKNOWN


@dataclass(frozen=True)
class OperatorState:
    """Snapshot of the operator resource's spec, read fresh every cycle.

    ``observed_config`` and ``unsupported_config_overrides`` are raw JSON
    bytes (empty when unset) because the synthesizer treats them as opaque
    config layers.
    """

    management_state: ManagementState
    raw_management_state: str
    observed_config: bytes
    unsupported_config_overrides: bytes
    log_level: str
    force_redeployment_reason: str

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any]) -> OperatorState:
        spec = resource.get("spec") or {}
        raw_state = str(spec.get("managementState") or "")
        return cls(
            management_state=ManagementState.parse(raw_state),
            raw_management_state=raw_state,
            observed_config=_raw_extension(spec.get("observedConfig")),
            unsupported_config_overrides=_raw_extension(spec.get("unsupportedConfigOverrides")),
            log_level=str(spec.get("logLevel") or ""),
            force_redeployment_reason=str(spec.get("forceRedeploymentReason") or ""),
        )


def _raw_extension(value: Any) -> bytes:
    if value is None:
        return b""
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class OperatorCondition:
    type: str
    status: str
    reason: str = ""
    message: str = ""


def upsert_condition(
    conditions: list[dict[str, Any]],
    condition: OperatorCondition,
    now: str,
) -> tuple[list[dict[str, Any]], bool]:
    """Insert or update *condition* by type, returning the new list and whether it changed.

    ``lastTransitionTime`` only moves when the status flips.
    """
    updated: list[dict[str, Any]] = []
    changed = True
    found = False
    for existing in conditions:
        if existing.get("type") != condition.type:
            updated.append(existing)
            continue
        found = True
        merged = dict(existing)
        merged["status"] = condition.status
        merged["reason"] = condition.reason
        merged["message"] = condition.message
        if existing.get("status") != condition.status or not existing.get("lastTransitionTime"):
            merged["lastTransitionTime"] = now
        changed = merged != existing
        updated.append(merged)
    if not found:
        updated.append(
            {
                "type": condition.type,
                "status": condition.status,
                "reason": condition.reason,
                "message": condition.message,
                "lastTransitionTime": now,
            }
        )
    return updated, changed


class OperatorClient:
    """Read access to the operator resource spec and write access to its conditions."""

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        name: str = OPERATOR_RESOURCE_NAME,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.custom_api = custom_api
        self.name = name
        self.now_fn = now_fn

    def _get(self) -> dict[str, Any]:
        return self.custom_api.get_cluster_custom_object(
            group=OPERATOR_GROUP,
            version=OPERATOR_VERSION,
            plural=OPERATOR_PLURAL,
            name=self.name,
        )

    def get_state(self) -> OperatorState:
        return OperatorState.from_resource(self._get())

    def list_resources(self, **kwargs: Any) -> Any:
        """List operator resources; shaped for ``kubernetes.watch.Watch.stream``."""
        return self.custom_api.list_cluster_custom_object(
            group=OPERATOR_GROUP,
            version=OPERATOR_VERSION,
            plural=OPERATOR_PLURAL,
            **kwargs,
        )

    def update_condition(self, condition: OperatorCondition) -> bool:
        """Upsert *condition* on the resource status; returns True when a write happened.

        The patch carries the read ``resourceVersion`` so a concurrent writer
        causes a conflict instead of a lost update.
        """
        resource = self._get()
        status = resource.get("status") or {}
        conditions = list(status.get("conditions") or [])
        updated, changed = upsert_condition(conditions, condition, self.now_fn())
        if not changed:
            return False

        resource_version = (resource.get("metadata") or {}).get("resourceVersion")
        body = {
            "metadata": {"resourceVersion": resource_version},

            "status": {"conditions": updated},
        }
        self.custom_api.patch_cluster_custom_object_status(
            group=OPERATOR_GROUP,
            version=OPERATOR_VERSION,
            plural=OPERATOR_PLURAL,
            name=self.name,
            body=body,
        )
        LOGGER.info("Updated condition %s=%s on %s", condition.type, condition.status, self.name)
        return True
