from __future__ import annotations

import copy
import json
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import yaml
from kubernetes.client import V1ConfigMap, V1ObjectMeta

ASSETS_DIR = Path(__file__).resolve().parent / "assets"

LAUNCH_MARKER = "exec hyperkube kube-controller-manager"
SERVING_CERT_SECRET = "serving-cert"
SERVING_CERT_ARGS = (
    "--tls-cert-file=/etc/kubernetes/static-pod-resources/secrets/serving-cert/tls.crt",
    "--tls-private-key-file=/etc/kubernetes/static-pod-resources/secrets/serving-cert/tls.key",
)
LOG_LEVEL_VERBOSITY = {"Normal": 2, "Debug": 4, "Trace": 6, "TraceAll": 8}
DEFAULT_VERBOSITY = 2
PROXY_CONFIG_PATH = ("targetconfigcontroller", "proxy")

IMAGE_PLACEHOLDER = "${IMAGE}"
OPERATOR_IMAGE_PLACEHOLDER = "${OPERATOR_IMAGE}"
CLUSTER_POLICY_CONTROLLER_IMAGE_PLACEHOLDER = "${CLUSTER_POLICY_CONTROLLER_IMAGE}"


class SynthesisError(ValueError):
    """Raised when layered inputs cannot be merged into a desired resource."""


class PodTemplateError(SynthesisError):
    """Raised when the pod template does not have the shape the controller edits."""


def read_asset(name: str) -> bytes:
    return (ASSETS_DIR / name).read_bytes()


def read_config_map(raw: bytes) -> V1ConfigMap:
    """Decode a ConfigMap manifest into a client model."""
    doc = yaml.safe_load(raw) or {}
    metadata = doc.get("metadata") or {}
    data = doc.get("data") or {}
    return V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            labels=dict(metadata["labels"]) if metadata.get("labels") else None,
            annotations=dict(metadata["annotations"]) if metadata.get("annotations") else None,
        ),
        data={str(k): ("" if v is None else str(v)) for k, v in data.items()},
    )


def _decode_layer(raw: bytes | str | None, layer: str) -> dict[str, Any] | None:
    if not raw:
        return None
    try:
        decoded = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise SynthesisError(f"failed to decode {layer}: {exc}") from exc
    if decoded is None:
        return None
    if not isinstance(decoded, dict):
        raise SynthesisError(f"{layer} must be an object, got {type(decoded).__name__}")
    return decoded


def merge_config(current: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into *current* in place and return it.

    Objects present on both sides are merged key by key; any other value,
    lists included, is replaced wholesale by the override.
    """
    for key, override_value in override.items():
        current_value = current.get(key)
        if isinstance(current_value, dict) and isinstance(override_value, dict):
            merge_config(current_value, override_value)
        else:
            current[key] = copy.deepcopy(override_value)
    return current


def prune_to_schema(value: Any, schema: Any, path: str = "") -> Any:
    """Drop every field of *value* that *schema* does not declare.

    A schema leaf of ``true`` (or an empty value) keeps the whole subtree.
    A nested mapping recurses; lists are pruned element-wise against the
    same schema.
    """
    if not isinstance(schema, dict):
        return value
    if value is None:
        return None
    if isinstance(value, list):
        return [prune_to_schema(item, schema, f"{path}[{i}]") for i, item in enumerate(value)]
    if not isinstance(value, dict):
        raise SynthesisError(f"{path or '<root>'}: expected an object, got {type(value).__name__}")
    return {
        key: prune_to_schema(item, schema[key], f"{path}.{key}" if path else key)
        for key, item in value.items()
        if key in schema
    }


def merge_pruned_config(
    schema: Mapping[str, Any],
    *layers: tuple[str, bytes | str | None],
) -> bytes:
    """Merge named config layers lowest precedence first and prune to *schema*.

    Returns canonical JSON (sorted keys, compact separators), so identical
    inputs always produce identical bytes.
    """
    merged: dict[str, Any] = {}
    for layer_name, raw in layers:
        decoded = _decode_layer(raw, layer_name)
        if decoded is not None:
            merge_config(merged, decoded)
    pruned = prune_to_schema(merged, dict(schema))
    return json.dumps(pruned, sort_keys=True, separators=(",", ":")).encode("utf-8")


def merge_pruned_config_map(
    schema: Mapping[str, Any],
    config_map: V1ConfigMap,
    config_key: str,
    default_config: bytes,
    observed_config: bytes,
    unsupported_overrides: bytes,
) -> V1ConfigMap:
    """Return a copy of *config_map* whose *config_key* holds the merged config.

    Precedence, lowest first: the template's own value under *config_key*,
    the defaults, the observed config, then the unsupported overrides.
    """
    data = dict(config_map.data or {})
    merged = merge_pruned_config(
        schema,
        ("base template", data.get(config_key)),
        ("default config", default_config),
        ("observed config", observed_config),
        ("unsupported config overrides", unsupported_overrides),
    )
    data[config_key] = merged.decode("utf-8")
    metadata = config_map.metadata
    return V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=V1ObjectMeta(
            name=metadata.name,
            namespace=metadata.namespace,
            labels=dict(metadata.labels) if metadata.labels else None,
            annotations=dict(metadata.annotations) if metadata.annotations else None,
        ),
        data=data,
    )


def required_config_map(
    template_asset: str,
    default_config_asset: str,
    schema_asset: str,
    observed_config: bytes,
    unsupported_overrides: bytes,
) -> V1ConfigMap:
    schema = yaml.safe_load(read_asset(schema_asset)) or {}
    return merge_pruned_config_map(
        schema,
        read_config_map(read_asset(template_asset)),
        "config.yaml",
        read_asset(default_config_asset),
        observed_config,
        unsupported_overrides,
    )


def required_kube_controller_manager_config(
    observed_config: bytes,
    unsupported_overrides: bytes,
) -> V1ConfigMap:
    return required_config_map(
        "kube-controller-manager-cm.yaml",
        "kube-controller-manager-defaultconfig.yaml",
        "kube-controller-manager-config-schema.yaml",
        observed_config,
        unsupported_overrides,
    )


def required_cluster_policy_controller_config(
    observed_config: bytes,
    unsupported_overrides: bytes,
) -> V1ConfigMap:

    return required_config_map(
        "cluster-policy-controller-cm.yaml",
        "cluster-policy-controller-defaultconfig.yaml",
        "cluster-policy-controller-config-schema.yaml",
        observed_config,
        unsupported_overrides,
    )


def nested_string_map(tree: Mapping[str, Any] | None, *path: str) -> dict[str, str] | None:
    """Return the string map at *path*, ``None`` when absent.

    Raises :class:`SynthesisError` if an intermediate value is not an object
    or any map value is not a string.
    """
    current: Any = tree
    walked: list[str] = []
    for part in path:
        if current is None:
            return None
        if not isinstance(current, dict):
            raise SynthesisError(f"{'.'.join(walked)} accessor error: {current!r} is not an object")
        walked.append(part)
        current = current.get(part)
    if current is None:
        return None
    if not isinstance(current, dict):
        raise SynthesisError(f"{'.'.join(path)} accessor error: {current!r} is not an object")
    result: dict[str, str] = {}
    for key, value in current.items():
        if not isinstance(value, str):
            raise SynthesisError(
                f"{'.'.join(path)}.{key} accessor error: {value!r} is of type "
                f"{type(value).__name__}, expected string"
            )
        result[str(key)] = value
    return result


def proxy_env_vars(proxy_config: Mapping[str, str] | None) -> list[dict[str, str]]:
    """Turn a proxy config map into container env entries sorted by name."""
    if proxy_config is None:
        return []
    return [{"name": name, "value": proxy_config[name]} for name in sorted(proxy_config)]


def _substitute_images(containers: list[dict[str, Any]], images: Mapping[str, str]) -> None:
    for container in containers:
        replacement = images.get(container.get("image", ""))
        if replacement:
            container["image"] = replacement


def synthesize_pod(
    template: bytes,
    images: Mapping[str, str],
    log_level: str,
    serving_cert_present: bool,
    proxy_config: Mapping[str, str] | None,
) -> dict[str, Any]:
    """Render the kube-controller-manager static pod from its template.

    Placeholder images are swapped for non-empty pull specs, the launch
    argument gets the verbosity flag (and TLS flags when the serving cert
    exists), and proxy settings become env vars on every container.
    """
    pod = yaml.safe_load(template)
    if not isinstance(pod, dict):
        raise PodTemplateError("pod template must be an object")
    spec = pod.get("spec") or {}
    containers = spec.get("containers") or []
    if not containers:
        raise PodTemplateError("pod template has no containers")

    pull_specs = {placeholder: image for placeholder, image in images.items() if image}
    _substitute_images(containers, pull_specs)
    _substitute_images(spec.get("initContainers") or [], pull_specs)

    args = containers[0].get("args") or []
    if len(args) != 1:
        raise PodTemplateError(f"expected only one container argument, got {len(args)}")
    if LAUNCH_MARKER not in args[0]:
        raise PodTemplateError(f"{LAUNCH_MARKER} not found in first argument {args[0]!r}")

    verbosity = LOG_LEVEL_VERBOSITY.get(log_level, DEFAULT_VERBOSITY)
    launch = f"{args[0].strip()} -v={verbosity}"
    if serving_cert_present:
        launch = f"{launch} {' '.join(SERVING_CERT_ARGS)}"
    containers[0]["args"] = [launch.strip()]

    env_vars = proxy_env_vars(proxy_config)
    if env_vars:
        for container in containers:
            container["env"] = list(container.get("env") or []) + copy.deepcopy(env_vars)
    return pod


def required_pod_config_map(
    images: Mapping[str, str],
    log_level: str,
    observed_config: bytes,
    force_redeployment_reason: str,
    version: str,
    secret_lookup: Callable[[str, str], Any | None],
    pod_template: bytes | None = None,
) -> V1ConfigMap:
    """Build the ``kube-controller-manager-pod`` ConfigMap.

    *secret_lookup* takes ``(namespace, name)`` and returns ``None`` for a
    missing secret; any other lookup failure propagates.
    """
    template = pod_template if pod_template is not None else read_asset("pod.yaml")
    pod_namespace = ((yaml.safe_load(template) or {}).get("metadata") or {}).get("namespace", "")
    serving_cert_present = secret_lookup(pod_namespace, SERVING_CERT_SECRET) is not None

    observed = _decode_layer(observed_config, "observedConfig")
    proxy_config = nested_string_map(observed, *PROXY_CONFIG_PATH)

    pod = synthesize_pod(template, images, log_level, serving_cert_present, proxy_config)

    config_map = read_config_map(read_asset("pod-cm.yaml"))
    config_map.data = {
        **(config_map.data or {}),
        "pod.yaml": json.dumps(pod, sort_keys=True, separators=(",", ":")),
        "forceRedeploymentReason": force_redeployment_reason,
        "version": version,
    }
    return config_map
