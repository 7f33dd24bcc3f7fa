#!/usr/bin/env python3

import os
import sys
from pathlib import Path

import pykube
import yaml

from llmd_cpu.functions import (
    announce,
    cluster_api,
    environment_variable_to_dict,
    kubectl_apply,
    llmdcpu_execute_cmd,
    namespace_exists,
)


def infra_values(ev: dict) -> dict:
    return {
        "gateway": {
            "gatewayClassName": "istio",
            "service": {"type": "ClusterIP"},
            "destinationRule": {"enabled": False},
        }
    }


def gaie_values(ev: dict) -> dict:
    return {
        "inferenceExtension": {
            "replicas": 1,
            "image": {
                "name": ev["image_epp_name"],
                "hub": f'{ev["image_registry"]}/{ev["image_registry_username"]}',
                "tag": ev["image_epp_tag"],
                "pullPolicy": "IfNotPresent",
            },
            "extProcPort": 9002,
            "pluginsConfigFile": "default-plugins.yaml",
        },
        "inferencePool": {
            "targetPortNumber": 8000,
            "modelServerType": "vllm",
            "modelServers": {
                "matchLabels": {"llm-d.ai/inferenceServing": "true"},
            },
        },
        "provider": {"name": "istio"},
    }


def ms_values(ev: dict) -> dict:
    """Values for llm-d-modelservice: CPU-only decode pods with the routing sidecar in front of vLLM."""
    metrics_port = ev["vllm_metrics_port"]
    return {
        "multinode": False,
        "modelArtifacts": {
            "uri": f'hf://{ev["deploy_model"]}',
            "name": ev["deploy_model"],
            "size": ev["deploy_model_size"],
        },
        "accelerator": {"type": "cpu"},
        "routing": {
            "servicePort": 8000,
            "proxy": {
                "image": ev["image_routing_sidecar_remote"],
                "connector": "nixlv2",
                "secure": False,
            },
        },
        "decode": {
            "create": True,
            "replicas": ev["deploy_decode_replicas"],
            "containers": [
                {
                    "name": ev["vllm_container_name"],
                    "image": ev["image_vllm_remote"],
                    "modelCommand": "vllmServe",
                    "args": [
                        "--max-model-len", str(ev["deploy_max_model_len"]),
                        "--dtype", "bfloat16",
                    ],
                    "env": [
                        {"name": "VLLM_CPU_KVCACHE_SPACE", "value": str(ev["deploy_kvcache_space_gib"])},
                        {"name": "VLLM_LOGGING_LEVEL", "value": "INFO"},
                    ],
                    "ports": [
                        {"containerPort": metrics_port, "protocol": "TCP", "name": "metrics"},
                    ],
                    "resources": {
                        "limits": {
                            "cpu": ev["deploy_decode_cpu_limit"],
                            "memory": ev["deploy_decode_memory_limit"],
                        },
                        "requests": {
                            "cpu": ev["deploy_decode_cpu_limit"],
                            "memory": ev["deploy_decode_memory_limit"],
                        },
                    },
                    "mountModelVolume": True,
                }
            ],
        },
        "prefill": {"create": False},
    }


def httproute_manifest(ev: dict) -> dict:
    return {
        "apiVersion": "gateway.networking.k8s.io/v1",
        "kind": "HTTPRoute",
        "metadata": {
            "name": ev["deploy_httproute_name"],
            "namespace": ev["deploy_namespace"],
        },
        "spec": {
            "parentRefs": [
                {
                    "group": "gateway.networking.k8s.io",
                    "kind": "Gateway",
                    "name": ev["deploy_gateway_name"],
                }
            ],
            "rules": [
                {
                    "backendRefs": [
                        {
                            "group": "inference.networking.k8s.io",
                            "kind": "InferencePool",
                            "name": ev["deploy_release_gaie"],
                            "port": 8000,
                            "weight": 1,
                        }
                    ],
                    "timeouts": {"backendRequest": "0s", "request": "0s"},
                    "matches": [{"path": {"type": "PathPrefix", "value": "/"}}],
                }
            ],
        },
    }


def write_helmfile(ev: dict) -> Path:
    helm_base_dir = Path(ev["control_work_dir"]) / "setup" / "helm"
    helm_base_dir.mkdir(parents=True, exist_ok=True)

    for name, values in [("infra", infra_values(ev)), ("gaie", gaie_values(ev)), ("ms", ms_values(ev))]:
        with open(helm_base_dir / f"{name}-values.yaml", "w") as f:
            yaml.safe_dump(values, f, sort_keys=False)

    helmfile_path = helm_base_dir / "cpu-inference.helmfile.yaml"
    with open(helmfile_path, "w") as f:
        f.write(f"""
repositories:
  - name: llm-d-infra
    url: {ev["deploy_infra_helm_repository_url"]}
  - name: llm-d-modelservice
    url: {ev["deploy_ms_helm_repository_url"]}

releases:
  - name: {ev["deploy_release_infra"]}
    namespace: {ev["deploy_namespace"]}
    chart: llm-d-infra/llm-d-infra
    version: {ev["deploy_infra_chart_version"]}
    installed: true
    values:
      - infra-values.yaml
    labels:
      type: infrastructure
      kind: inference-stack

  - name: {ev["deploy_release_gaie"]}
    namespace: {ev["deploy_namespace"]}
    chart: {ev["deploy_gaie_chart"]}
    version: {ev["deploy_gaie_chart_version"]}
    installed: true
    needs:
      - {ev["deploy_namespace"]}/{ev["deploy_release_infra"]}
    values:
      - gaie-values.yaml
    labels:
      type: inference
      kind: inference-stack

  - name: {ev["deploy_release_ms"]}
    namespace: {ev["deploy_namespace"]}
    chart: llm-d-modelservice/llm-d-modelservice
    version: {ev["deploy_ms_chart_version"]}
    installed: true
    needs:
      - {ev["deploy_namespace"]}/{ev["deploy_release_infra"]}
      - {ev["deploy_namespace"]}/{ev["deploy_release_gaie"]}
    values:
      - ms-values.yaml
    labels:
      type: model
      kind: inference-stack
""")
    return helmfile_path


def deploy_charts(api: pykube.HTTPClient, ev: dict) -> int:
    """
    Create the namespace, helmfile sync the infra/inferencepool/modelservice
    releases and install the HTTPRoute.

    Returns:
        int: 0 for success, non-zero for failure
    """
    namespace = ev["deploy_namespace"]
    announce("🚀 Deploying Helm charts...")

    if not namespace_exists(api, namespace):
        namespace_manifest = {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": namespace},
        }
        kubectl_apply(api=api, manifest_data=namespace_manifest, dry_run=ev["control_dry_run"])

    try:
        helmfile_path = write_helmfile(ev)
    except OSError as e:
        announce(f"ERROR: Unable to create helmfile: {e}", ignore_if_failed=True)
        return 1

    sync_cmd = f"helmfile sync -f {helmfile_path} -n {namespace}"
    result = llmdcpu_execute_cmd(sync_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"])
    if result != 0:
        announce(f"ERROR: Failed while running \"{sync_cmd}\" (exit code: {result})", ignore_if_failed=True)
        return result

    announce("✅ Helm charts deployed")

    announce("🚀 Installing HTTPRoute...")
    kubectl_apply(api=api, manifest_data=httproute_manifest(ev), dry_run=ev["control_dry_run"])
    announce("✅ HTTPRoute installed")

    return 0


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    api = cluster_api(ev)

    return deploy_charts(api, ev)


if __name__ == "__main__":
    sys.exit(main())
