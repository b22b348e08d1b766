from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from kubernetes.client import CoreV1Api, CustomObjectsApi

from targetconfig.src.cabundle import (
    ResourceLocation,
    combine_ca_bundle_config_maps,
    combine_signer_ca_bundle,
)
from targetconfig.src.gates import ensure_localhost_recovery_sa_token, ensure_trusted_ca_config_map
from targetconfig.src.kube import EventRecorder, apply_config_map, read_or_none
from targetconfig.src.metrics import METRICS
from targetconfig.src.notifications import EnqueueHandler, NamespaceEventHandler, ResourceWatcher
from targetconfig.src.operator_client import (
    ManagementState,
    OperatorClient,
    OperatorCondition,
    OperatorState,
)
from targetconfig.src.signer import SIGNER_SECRET_NAME, manage_csr_signer
from targetconfig.src.synthesis import (
    CLUSTER_POLICY_CONTROLLER_IMAGE_PLACEHOLDER,
    IMAGE_PLACEHOLDER,
    OPERATOR_IMAGE_PLACEHOLDER,
    required_cluster_policy_controller_config,
    required_kube_controller_manager_config,
    required_pod_config_map,
)
from targetconfig.src.workqueue import ExponentialBackoff, SingleKeyQueue

TARGET_NAMESPACE = "openshift-kube-controller-manager"
OPERATOR_NAMESPACE = "openshift-kube-controller-manager-operator"
GLOBAL_USER_SPECIFIED_CONFIG_NAMESPACE = "openshift-config"
GLOBAL_MACHINE_SPECIFIED_CONFIG_NAMESPACE = "openshift-config-managed"

WORK_QUEUE_KEY = "key"
CONDITION_TYPE = "TargetConfigControllerDegraded"
CONDITION_REASON = "SynchronizationError"
REQUIRED_CONFIG_PATHS: tuple[tuple[str, ...], ...] = (("extendedArguments", "cluster-name"),)


class RequiredConfigError(RuntimeError):
    """Raised when the observed config lacks a value synthesis depends on."""


class RequeueRequested(RuntimeError):
    """Raised after a degraded cycle so the queue retries it with backoff."""


def check_required_config(
    config: bytes,
    required_paths: tuple[tuple[str, ...], ...] = REQUIRED_CONFIG_PATHS,
) -> None:
    """Raise :class:`RequiredConfigError` unless every required path holds a value.

    ``null``, empty strings and empty lists count as missing values.
    """
    if not config:
        raise RequiredConfigError("no observedConfig")
    try:
        existing = json.loads(config)
    except ValueError as exc:
        raise RequiredConfigError(f"error parsing config, {exc}") from exc
    if not isinstance(existing, dict):
        raise RequiredConfigError(
            f"error parsing config, expected an object, got {type(existing).__name__}"
        )

    for required_path in required_paths:
        dotted = ".".join(required_path)
        current: Any = existing
        for depth, part in enumerate(required_path):
            if not isinstance(current, dict):
                walked = ".".join(required_path[:depth])
                raise RequiredConfigError(
                    f"error reading {dotted} from config, {walked} is of type "
                    f"{type(current).__name__}, expected an object"
                )
            if part not in current:
                raise RequiredConfigError(f"{dotted} missing from config")
            current = current[part]
        if current is None:
            raise RequiredConfigError(f"{dotted} null in config")
        if isinstance(current, (list, str)) and len(current) == 0:
            raise RequiredConfigError(f"{dotted} empty in config")


@dataclass(frozen=True)
class StepResult:
    changed: bool = False
    requeue_after: timedelta = timedelta(0)


@dataclass(frozen=True)
class CycleResult:
    """Immutable record of one reconcile cycle.

    ``failures`` keeps ``(step, error)`` pairs in execution order and
    ``changed`` lists the steps whose apply actually wrote something.
    """

    failures: tuple[tuple[str, str], ...] = ()
    changed: tuple[str, ...] = ()
    requeue_after: timedelta = timedelta(0)

    @property
    def degraded(self) -> bool:
        return bool(self.failures)


def aggregate_condition(failures: tuple[tuple[str, str], ...]) -> OperatorCondition:
    if not failures:
        return OperatorCondition(type=CONDITION_TYPE, status="False")
    return OperatorCondition(
        type=CONDITION_TYPE,
        status="True",
        reason=CONDITION_REASON,
        message="\n".join(f'"{name}": {error}' for name, error in failures),
    )


class TargetConfigController:
    """Reconciles everything the kube-controller-manager static pod consumes.

    Each cycle reads the operator resource, checks preconditions, then runs
    every step regardless of earlier failures:

    1. the kube-controller-manager and cluster-policy-controller config
       ConfigMaps (layered merge of template, defaults, observed config and
       overrides);
    2. three CA bundles and the CSR signer promotion;
    3. the localhost recovery token readiness gate;
    4. the static pod ConfigMap and the trusted CA ConfigMap.

    All failures are folded into one ``TargetConfigControllerDegraded``
    condition.  A degraded cycle still counts as failed for the work queue,
    so it is retried with backoff.  A pending signer promotion is not a
    failure; it schedules a delayed requeue instead.

    A single worker drains the queue: there is one logical target, and
    concurrent cycles would race on reads of the same external state.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        operator_client: OperatorClient,
        images: Mapping[str, str],
        version: str,
        queue: SingleKeyQueue | None = None,
        recorder: EventRecorder | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.core_api = core_api
        self.operator_client = operator_client
        self.images = dict(images)
        self.version = version
        self.queue = queue or SingleKeyQueue()
        self.recorder = recorder or EventRecorder(
            None, OPERATOR_NAMESPACE, "target-config-controller"
        )
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn
        self.ready = threading.Event()
        self.last_condition: OperatorCondition | None = None

    def _lookup_config_map(self, namespace: str, name: str) -> Any | None:
        return read_or_none(self.core_api.read_namespaced_config_map, namespace, name)

    def _lookup_secret(self, namespace: str, name: str) -> Any | None:
        return read_or_none(self.core_api.read_namespaced_secret, namespace, name)

    def _apply(self, required: Any) -> StepResult:
        _, changed = apply_config_map(self.core_api, required, self.recorder)
        return StepResult(changed=changed)

    def _manage_kube_controller_manager_config(self, state: OperatorState) -> StepResult:
        return self._apply(
            required_kube_controller_manager_config(
                state.observed_config, state.unsupported_config_overrides
            )
        )

    def _manage_cluster_policy_controller_config(self, state: OperatorState) -> StepResult:
        return self._apply(
            required_cluster_policy_controller_config(
                state.observed_config, state.unsupported_config_overrides
            )
        )

    def _manage_csr_intermediate_ca_bundle(self, state: OperatorState) -> StepResult:
        required = combine_signer_ca_bundle(
            ResourceLocation(OPERATOR_NAMESPACE, "csr-signer-ca"),
            self._lookup_config_map,
            self._lookup_secret(OPERATOR_NAMESPACE, SIGNER_SECRET_NAME),
            now=self.now_fn(),
        )
        if required is None:
            return StepResult()
        return self._apply(required)

    def _manage_csr_ca_bundle(self, state: OperatorState) -> StepResult:
        return self._apply(
            combine_ca_bundle_config_maps(
                ResourceLocation(OPERATOR_NAMESPACE, "csr-controller-ca"),
                self._lookup_config_map,
                # the CA we use to sign CSRs
                ResourceLocation(OPERATOR_NAMESPACE, "csr-signer-ca"),
                # the CA that signs the key pairs in csr-signer
                ResourceLocation(OPERATOR_NAMESPACE, "csr-controller-signer-ca"),
                now=self.now_fn(),
            )
        )

    def _manage_csr_signer(self, state: OperatorState) -> StepResult:
        result = manage_csr_signer(
            self.core_api,
            source_namespace=OPERATOR_NAMESPACE,
            target_namespace=TARGET_NAMESPACE,
            recorder=self.recorder,
            now=self.now_fn(),
        )
        return StepResult(changed=result.modified, requeue_after=result.requeue_after)

    def _manage_service_account_ca_bundle(self, state: OperatorState) -> StepResult:
        return self._apply(
            combine_ca_bundle_config_maps(
                ResourceLocation(TARGET_NAMESPACE, "serviceaccount-ca"),
                self._lookup_config_map,
                # recognizes the API server
                ResourceLocation(
                    GLOBAL_MACHINE_SPECIFIED_CONFIG_NAMESPACE, "kube-apiserver-server-ca"
                ),
                # recognizes default ingress certificates
                ResourceLocation(GLOBAL_MACHINE_SPECIFIED_CONFIG_NAMESPACE, "router-ca"),
                now=self.now_fn(),
            )
        )

    def _ensure_localhost_recovery_sa_token(self, state: OperatorState) -> StepResult:
        ensure_localhost_recovery_sa_token(self.core_api, TARGET_NAMESPACE)
        return StepResult()

    def _manage_pod(self, state: OperatorState) -> StepResult:
        return self._apply(
            required_pod_config_map(
                images=self.images,
                log_level=state.log_level,
                observed_config=state.observed_config,
                force_redeployment_reason=state.force_redeployment_reason,
                version=self.version,
                secret_lookup=self._lookup_secret,
            )
        )

    def _ensure_trusted_ca(self, state: OperatorState) -> StepResult:
        changed = ensure_trusted_ca_config_map(self.core_api, TARGET_NAMESPACE, self.recorder)
        return StepResult(changed=changed)

    def steps(self) -> list[tuple[str, Callable[[OperatorState], StepResult]]]:
        return [
            ("configmap", self._manage_kube_controller_manager_config),
            (
                "configmap/cluster-policy-controller-config",
                self._manage_cluster_policy_controller_config,
            ),
            ("configmap/csr-intermediate-ca", self._manage_csr_intermediate_ca_bundle),
            ("configmap/csr-controller-ca", self._manage_csr_ca_bundle),
            ("secrets/csr-signer", self._manage_csr_signer),
            ("configmap/serviceaccount-ca", self._manage_service_account_ca_bundle),
            ("serviceaccount/localhost-recovery-client", self._ensure_localhost_recovery_sa_token),
            ("configmap/kube-controller-manager-pod", self._manage_pod),
            ("configmap/trusted-ca-bundle", self._ensure_trusted_ca),
        ]

    def reconcile(self, state: OperatorState) -> CycleResult:
        """Run every step, publish the aggregated condition, and return the outcome.

        A failed status update propagates; step failures never do.
        """
        failures: list[tuple[str, str]] = []
        changed: list[str] = []
        requeue_after = timedelta(0)

        for name, step in self.steps():
            try:
                result = step(state)
            except Exception as exc:
                self.logger.warning("Step %s failed: %s", name, exc)
                METRICS.step_failures_total.labels(step=name).inc()
                failures.append((name, str(exc)))
                continue
            if result.changed:
                changed.append(name)
            if result.requeue_after > requeue_after:
                requeue_after = result.requeue_after

        if requeue_after > timedelta(0):
            self.queue.add_after(requeue_after.total_seconds())

        condition = aggregate_condition(tuple(failures))
        self.operator_client.update_condition(condition)
        self.last_condition = condition
        if failures:
            self.logger.error("Reconcile degraded:\n%s", condition.message)
        return CycleResult(
            failures=tuple(failures),
            changed=tuple(changed),
            requeue_after=requeue_after,
        )

    def sync(self) -> CycleResult | None:
        """Run one cycle; returns ``None`` when the operator is not managed."""
        state = self.operator_client.get_state()

        if state.management_state in {ManagementState.UNMANAGED, ManagementState.REMOVED}:
            self.logger.debug("Management state is %s; nothing to do", state.raw_management_state)
            return None
        if state.management_state is ManagementState.UNKNOWN:
            self.recorder.warning(
                "ManagementStateUnknown",
                f"Unrecognized operator management state {state.raw_management_state!r}",
            )
            return None

        try:
            check_required_config(state.observed_config)
        except RequiredConfigError as exc:
            self.recorder.warning("ConfigMissing", str(exc))
            raise

        result = self.reconcile(state)
        if result.degraded:
            raise RequeueRequested("synthetic requeue request")
        return result

    def process_next_work_item(self) -> bool:
        """Handle one queued cycle; returns False once the queue is shutting down."""
        if not self.queue.get():
            return False
        started = time.monotonic()
        try:
            self.sync()
        except Exception as exc:
            self.logger.error("%s failed with: %s", WORK_QUEUE_KEY, exc)
            METRICS.sync_total.labels(result="error").inc()
            delay = self.queue.add_rate_limited()
            self.logger.info("Retrying %s in %.3fs", WORK_QUEUE_KEY, delay)
        else:
            METRICS.sync_total.labels(result="success").inc()
            self.queue.forget()
        finally:
            METRICS.sync_duration_seconds.observe(time.monotonic() - started)
            self.ready.set()
            self.queue.done()
        return True

    def run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def request_stop(self) -> None:
        self.queue.shut_down()

    def run_forever(self, shutdown_event: threading.Event | None = None, workers: int = 1) -> None:
        """Run the single worker until *shutdown_event* is set.

        An in-flight cycle is allowed to finish; the queue then stops handing
        out work.
        """
        stop = shutdown_event or threading.Event()
        if workers != 1:
            self.logger.info("Requested %d workers; running exactly one", workers)
        self.logger.info("Starting TargetConfigController")
        self.queue.add()
        worker = threading.Thread(target=self.run_worker, name="target-config-worker", daemon=True)
        worker.start()
        stop.wait()
        self.request_stop()
        worker.join()
        self.ready.clear()
        self.logger.info("Shutting down TargetConfigController")


def build_watchers(
    queue: SingleKeyQueue,
    core_api: CoreV1Api,
    operator_client: OperatorClient,
) -> list[ResourceWatcher]:
    """Create the notification sources that feed the work queue.

    Watches the operator resource (spec inputs and status written by others),
    our outputs in the target namespace, and our inputs in the config and
    operator namespaces.
    """
    watchers = [
        ResourceWatcher(
            "kubecontrollermanagers",
            operator_client.list_resources,
            EnqueueHandler(queue, "kubecontrollermanagers"),
        ),
        ResourceWatcher(
            "namespaces",
            core_api.list_namespace,
            NamespaceEventHandler(queue, {TARGET_NAMESPACE}),
        ),
        ResourceWatcher(
            f"serviceaccounts/{TARGET_NAMESPACE}",
            core_api.list_namespaced_service_account,
            EnqueueHandler(queue, f"serviceaccounts/{TARGET_NAMESPACE}"),
            list_kwargs={"namespace": TARGET_NAMESPACE},
        ),
    ]
    for namespace in (
        TARGET_NAMESPACE,
        GLOBAL_USER_SPECIFIED_CONFIG_NAMESPACE,
        GLOBAL_MACHINE_SPECIFIED_CONFIG_NAMESPACE,
        OPERATOR_NAMESPACE,
    ):
        for kind, list_fn in (
            ("configmaps", core_api.list_namespaced_config_map),
            ("secrets", core_api.list_namespaced_secret),
        ):
            source = f"{kind}/{namespace}"
            watchers.append(
                ResourceWatcher(
                    source,
                    list_fn,
                    EnqueueHandler(queue, source),
                    list_kwargs={"namespace": namespace},
                )
            )
    return watchers


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(
    core_api: CoreV1Api,
    custom_api: CustomObjectsApi,
) -> TargetConfigController:
    """Construct a :class:`TargetConfigController` from environment variables.

    Environment variables (with defaults):
        ``IMAGE``: kube-controller-manager pull spec (empty keeps the placeholder).
        ``OPERATOR_IMAGE``: operator pull spec used by the cert syncer.
        ``CLUSTER_POLICY_CONTROLLER_IMAGE``: cluster-policy-controller pull spec.
        ``OPERATOR_IMAGE_VERSION``: version recorded in the pod ConfigMap (``0.0.1-snapshot``).
        ``QUEUE_BASE_BACKOFF_MILLISECONDS``: first retry delay after a failed cycle (``5``).
        ``QUEUE_MAX_BACKOFF_SECONDS``: retry delay cap (``1000``).
    """
    version = os.getenv("OPERATOR_IMAGE_VERSION", "0.0.1-snapshot")
    if not version.strip():
        raise ValueError("OPERATOR_IMAGE_VERSION must be a non-empty string")

    base_ms = env_int("QUEUE_BASE_BACKOFF_MILLISECONDS", 5, minimum=1)
    max_seconds = env_int("QUEUE_MAX_BACKOFF_SECONDS", 1000, minimum=1)
    if max_seconds * 1000 < base_ms:
        raise ValueError(
            "QUEUE_MAX_BACKOFF_SECONDS must not be smaller than QUEUE_BASE_BACKOFF_MILLISECONDS"
        )

    images = {
        IMAGE_PLACEHOLDER: os.getenv("IMAGE", ""),
        OPERATOR_IMAGE_PLACEHOLDER: os.getenv("OPERATOR_IMAGE", ""),
        CLUSTER_POLICY_CONTROLLER_IMAGE_PLACEHOLDER: os.getenv(
            "CLUSTER_POLICY_CONTROLLER_IMAGE", ""
        ),
    }
    queue = SingleKeyQueue(
        ExponentialBackoff(base_seconds=base_ms / 1000.0, max_seconds=float(max_seconds))
    )

    recorder = EventRecorder(core_api, OPERATOR_NAMESPACE, "target-config-controller")

    return TargetConfigController(
        core_api=core_api,
        operator_client=OperatorClient(custom_api),
        images=images,
        version=version,
        queue=queue,
        recorder=recorder,
    )
