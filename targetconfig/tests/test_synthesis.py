from __future__ import annotations

import json
from typing import Any

import pytest

from targetconfig.src.synthesis import (
    SERVING_CERT_ARGS,
    PodTemplateError,
    SynthesisError,
    merge_pruned_config,
    merge_pruned_config_map,
    nested_string_map,
    proxy_env_vars,
    read_config_map,
    required_cluster_policy_controller_config,
    required_kube_controller_manager_config,
    required_pod_config_map,
    synthesize_pod,
)

SCHEMA = {
    "apiVersion": True,
    "kind": True,
    "extendedArguments": True,
    "serving": {"certFile": True},
}

POD_TEMPLATE = b"""
apiVersion: v1
kind: Pod
metadata:
  name: kube-controller-manager
  namespace: openshift-kube-controller-manager
spec:
  initContainers:
  - name: wait
    image: ${IMAGE}
  containers:
  - name: kube-controller-manager
    image: ${IMAGE}
    args:
    - |
      exec hyperkube kube-controller-manager --openshift-config=/config.yaml
  - name: policy
    image: ${CLUSTER_POLICY_CONTROLLER_IMAGE}
    env:
    - name: EXISTING
      value: "1"
  - name: syncer
    image: ${OPERATOR_IMAGE}
"""

IMAGES = {
    "${IMAGE}": "quay.io/kcm@sha256:aaa",
    "${OPERATOR_IMAGE}": "quay.io/operator@sha256:bbb",
    "${CLUSTER_POLICY_CONTROLLER_IMAGE}": "quay.io/cpc@sha256:ccc",
}


def _no_secret(namespace: str, name: str) -> Any:
    return None


# ---------------------------------------------------------------------------
# Layered config merge
# ---------------------------------------------------------------------------


def test_layers_apply_in_precedence_order() -> None:
    merged = json.loads(
        merge_pruned_config(
            SCHEMA,
            ("base", b"extendedArguments: {a: [base], b: [base], c: [base], d: [base]}"),
            ("defaults", b"extendedArguments: {b: [default], c: [default], d: [default]}"),
            ("observed", b'{"extendedArguments": {"c": ["observed"], "d": ["observed"]}}'),
            ("overrides", b'{"extendedArguments": {"d": ["override"]}}'),
        )
    )

    assert merged["extendedArguments"] == {
        "a": ["base"],
        "b": ["default"],
        "c": ["observed"],
        "d": ["override"],
    }


def test_lists_are_replaced_not_concatenated() -> None:
    merged = json.loads(
        merge_pruned_config(
            SCHEMA,
            ("defaults", b"extendedArguments: {flags: [one, two]}"),
            ("observed", b'{"extendedArguments": {"flags": ["three"]}}'),
        )
    )

    assert merged["extendedArguments"]["flags"] == ["three"]


def test_unknown_fields_are_pruned() -> None:
    merged = json.loads(
        merge_pruned_config(
            SCHEMA,
            (
                "observed",
                b'{"kind": "Config", "bogus": 1, "serving": {"certFile": "/a", "extra": true}}',
            ),
        )
    )

    assert merged == {"kind": "Config", "serving": {"certFile": "/a"}}


def test_empty_layers_are_skipped() -> None:
    merged = merge_pruned_config(SCHEMA, ("base", b""), ("observed", None), ("overrides", b"null"))

    assert merged == b"{}"


def test_merge_output_is_byte_identical_regardless_of_input_key_order() -> None:
    first = merge_pruned_config(SCHEMA, ("observed", b'{"kind": "K", "apiVersion": "v1"}'))
    second = merge_pruned_config(SCHEMA, ("observed", b'{"apiVersion": "v1", "kind": "K"}'))

    assert first == second
    assert first == b'{"apiVersion":"v1","kind":"K"}'


def test_non_object_layer_is_rejected() -> None:
    with pytest.raises(SynthesisError, match="observed must be an object"):
        merge_pruned_config(SCHEMA, ("observed", b"[1, 2]"))


def test_scalar_where_schema_expects_object_is_rejected() -> None:
    with pytest.raises(SynthesisError, match="serving"):
        merge_pruned_config(SCHEMA, ("observed", b'{"serving": "oops"}'))


def test_merge_pruned_config_map_keeps_template_metadata() -> None:
    template = read_config_map(
        b"""
apiVersion: v1
kind: ConfigMap
metadata:
  namespace: ns
  name: config
  labels:
    app: kcm
data:
  config.yaml: "kind: Base"
  other: keep
"""
    )

    required = merge_pruned_config_map(
        SCHEMA, template, "config.yaml", b"", b'{"apiVersion": "v1"}', b""
    )

    assert required.metadata.namespace == "ns"
    assert required.metadata.labels == {"app": "kcm"}
    assert required.data["other"] == "keep"
    assert json.loads(required.data["config.yaml"]) == {"apiVersion": "v1", "kind": "Base"}
    # The template object itself is left untouched.
    assert template.data["config.yaml"] == "kind: Base"


def test_kube_controller_manager_config_layers_defaults_and_observed() -> None:
    observed = json.dumps(
        {"extendedArguments": {"cluster-name": ["test-abc"]}, "unknown": True}
    ).encode()
    overrides = json.dumps({"extendedArguments": {"kube-api-qps": ["500"]}}).encode()

    required = required_kube_controller_manager_config(observed, overrides)
    config = json.loads(required.data["config.yaml"])

    assert required.metadata.name == "config"
    assert required.metadata.namespace == "openshift-kube-controller-manager"
    assert config["kind"] == "KubeControllerManagerConfig"
    assert config["extendedArguments"]["cluster-name"] == ["test-abc"]
    assert config["extendedArguments"]["kube-api-qps"] == ["500"]
    assert config["extendedArguments"]["leader-elect"] == ["true"]
    assert "unknown" not in config


def test_cluster_policy_controller_config_is_deterministic() -> None:
    observed = b'{"extendedArguments": {"cluster-name": ["c"]}, "featureGates": ["A=true"]}'

    first = required_cluster_policy_controller_config(observed, b"")
    second = required_cluster_policy_controller_config(observed, b"")

    assert first.data == second.data
    config = json.loads(first.data["config.yaml"])
    assert config["featureGates"] == ["A=true"]
    assert "extendedArguments" not in config


# ---------------------------------------------------------------------------
# Pod template
# ---------------------------------------------------------------------------


def test_images_are_substituted_in_containers_and_init_containers() -> None:
    pod = synthesize_pod(POD_TEMPLATE, IMAGES, "Normal", False, None)

    images = [container["image"] for container in pod["spec"]["containers"]]
    assert images == [
        "quay.io/kcm@sha256:aaa",
        "quay.io/cpc@sha256:ccc",
        "quay.io/operator@sha256:bbb",
    ]
    assert pod["spec"]["initContainers"][0]["image"] == "quay.io/kcm@sha256:aaa"


def test_empty_pull_specs_leave_placeholders() -> None:
    pod = synthesize_pod(POD_TEMPLATE, {**IMAGES, "${OPERATOR_IMAGE}": ""}, "Normal", False, None)

    assert pod["spec"]["containers"][2]["image"] == "${OPERATOR_IMAGE}"
    assert pod["spec"]["containers"][0]["image"] == "quay.io/kcm@sha256:aaa"


@pytest.mark.parametrize(
    ("log_level", "flag"),
    [
        ("Normal", "-v=2"),
        ("Debug", "-v=4"),
        ("Trace", "-v=6"),
        ("TraceAll", "-v=8"),
        ("", "-v=2"),
        ("Loud", "-v=2"),
    ],
)
def test_log_level_maps_to_verbosity(log_level: str, flag: str) -> None:
    pod = synthesize_pod(POD_TEMPLATE, IMAGES, log_level, False, None)

    args = pod["spec"]["containers"][0]["args"]
    assert len(args) == 1
    assert args[0] == (
        f"exec hyperkube kube-controller-manager --openshift-config=/config.yaml {flag}"
    )


def test_serving_cert_adds_tls_flags_once() -> None:
    pod = synthesize_pod(POD_TEMPLATE, IMAGES, "Normal", True, None)

    args = pod["spec"]["containers"][0]["args"]
    assert len(args) == 1
    for flag in SERVING_CERT_ARGS:
        assert args[0].count(flag) == 1
    assert args[0].endswith(SERVING_CERT_ARGS[1])


def test_more_than_one_argument_is_rejected() -> None:
    template = POD_TEMPLATE.replace(
        b"    - |\n      exec hyperkube",
        b"    - --extra\n    - |\n      exec hyperkube",
    )

    with pytest.raises(PodTemplateError, match="expected only one container argument, got 2"):
        synthesize_pod(template, IMAGES, "Normal", False, None)


def test_missing_launch_marker_is_rejected() -> None:
    template = POD_TEMPLATE.replace(
        b"exec hyperkube kube-controller-manager", b"exec something-else"
    )

    with pytest.raises(PodTemplateError, match="not found in first argument"):
        synthesize_pod(template, IMAGES, "Normal", False, None)


def test_proxy_env_vars_are_sorted_by_name() -> None:
    env = proxy_env_vars(
        {"NO_PROXY": "localhost", "HTTPS_PROXY": "https://p", "HTTP_PROXY": "http://p"}
    )

    assert [item["name"] for item in env] == ["HTTPS_PROXY", "HTTP_PROXY", "NO_PROXY"]
    assert env[0] == {"name": "HTTPS_PROXY", "value": "https://p"}


def test_proxy_env_vars_empty_for_missing_config() -> None:
    assert proxy_env_vars(None) == []


def test_proxy_env_is_appended_to_every_container() -> None:
    pod = synthesize_pod(
        POD_TEMPLATE, IMAGES, "Normal", False, {"NO_PROXY": "x", "HTTP_PROXY": "y"}
    )

    containers = pod["spec"]["containers"]
    assert containers[0]["env"] == [
        {"name": "HTTP_PROXY", "value": "y"},
        {"name": "NO_PROXY", "value": "x"},
    ]
    assert [item["name"] for item in containers[1]["env"]] == ["EXISTING", "HTTP_PROXY", "NO_PROXY"]
    assert "env" not in pod["spec"]["initContainers"][0]


def test_nested_string_map_rejects_non_string_values() -> None:
    with pytest.raises(SynthesisError, match="expected string"):
        nested_string_map(
            {"targetconfigcontroller": {"proxy": {"HTTP_PROXY": 3}}},
            "targetconfigcontroller",
            "proxy",
        )


def test_nested_string_map_missing_path_is_none() -> None:
    assert nested_string_map({}, "targetconfigcontroller", "proxy") is None
    assert nested_string_map(None, "targetconfigcontroller", "proxy") is None


def test_pod_config_map_is_byte_identical_across_runs() -> None:
    observed = json.dumps(
        {
            "targetconfigcontroller": {
                "proxy": {"NO_PROXY": ".cluster.local", "HTTPS_PROXY": "https://proxy"}
            }
        }
    ).encode()
    reordered = json.dumps(
        {
            "targetconfigcontroller": {
                "proxy": {"HTTPS_PROXY": "https://proxy", "NO_PROXY": ".cluster.local"}
            }
        }

    ).encode()

    first = required_pod_config_map(IMAGES, "Debug", observed, "reason-1", "4.11.0", _no_secret)
    second = required_pod_config_map(IMAGES, "Debug", reordered, "reason-1", "4.11.0", _no_secret)

    assert first.data == second.data


def test_pod_config_map_embeds_reason_and_version() -> None:
    lookups: list[tuple[str, str]] = []

    def lookup(namespace: str, name: str) -> Any:
        lookups.append((namespace, name))
        return object()

    required = required_pod_config_map(IMAGES, "Normal", b"", "operator asked", "4.11.0", lookup)

    assert required.metadata.name == "kube-controller-manager-pod"
    assert required.data["forceRedeploymentReason"] == "operator asked"
    assert required.data["version"] == "4.11.0"
    assert lookups == [("openshift-kube-controller-manager", "serving-cert")]
    pod = json.loads(required.data["pod.yaml"])
    launch = pod["spec"]["containers"][0]["args"][0]
    assert launch.count("--tls-cert-file=") == 1
    assert pod["spec"]["containers"][0]["image"] == "quay.io/kcm@sha256:aaa"


def test_pod_config_map_propagates_lookup_errors() -> None:
    def lookup(namespace: str, name: str) -> Any:
        raise RuntimeError("apiserver unavailable")

    with pytest.raises(RuntimeError, match="apiserver unavailable"):
        required_pod_config_map(IMAGES, "Normal", b"", "", "v", lookup)
