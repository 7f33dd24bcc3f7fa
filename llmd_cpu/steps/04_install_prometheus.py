#!/usr/bin/env python3

import os
import sys
import time
from pathlib import Path

import pykube
import yaml
from pykube.exceptions import PyKubeError

from llmd_cpu.functions import (
    announce,
    cluster_api,
    environment_variable_to_dict,
    kubectl_get,
    llmdcpu_execute_cmd,
    namespace_exists,
)


def ensure_helm_repository(ev: dict, repo_name: str, repo_url: str) -> int:
    """
    Ensure helm repository is added and updated.

    Returns:
        int: 0 for success, non-zero for failure
    """
    for cmd in [
        f"{ev['control_hcmd']} repo add {repo_name} {repo_url} --force-update",
        f"{ev['control_hcmd']} repo update",
    ]:
        result = llmdcpu_execute_cmd(
            actual_cmd=cmd,
            dry_run=ev["control_dry_run"],
            verbose=ev["control_verbose"],
            silent=not ev["control_verbose"],
            attempts=3,
            delay=5,
        )
        if result != 0:
            announce(f"ERROR: Failed while running \"{cmd}\" (exit code: {result})", ignore_if_failed=True)
            return result

    return 0


def prometheus_values(ev: dict) -> dict:
    return {
        "grafana": {
            "enabled": True,
            "adminPassword": ev["monitoring_grafana_admin_password"],
        },
        "prometheus": {
            "prometheusSpec": {
                # pick up the ServiceMonitors/PodMonitors created by the llm-d charts
                "serviceMonitorSelectorNilUsesHelmValues": False,
                "podMonitorSelectorNilUsesHelmValues": False,
                "retention": "1d",
            }
        },
        "alertmanager": {"enabled": False},
    }


def write_prometheus_values(ev: dict) -> Path:
    helm_base_dir = Path(ev["control_work_dir"]) / "setup" / "helm"
    helm_base_dir.mkdir(parents=True, exist_ok=True)
    values_path = helm_base_dir / "prometheus-values.yaml"
    with open(values_path, "w") as f:
        yaml.safe_dump(prometheus_values(ev), f, sort_keys=False)
    return values_path


def install_prometheus(api: pykube.HTTPClient, ev: dict) -> int:
    """
    Install kube-prometheus-stack (Prometheus and Grafana) into the monitoring namespace.

    Returns:
        int: 0 for success, non-zero for failure
    """
    namespace = ev["monitoring_namespace"]
    announce("🚀 Installing Prometheus stack...")

    result = ensure_helm_repository(ev, ev["monitoring_helm_repository"], ev["monitoring_helm_repository_url"])
    if result != 0:
        return result

    values_path = write_prometheus_values(ev)
    install_cmd = (
        f"{ev['control_hcmd']} upgrade -i {ev['monitoring_release']} "
        f"{ev['monitoring_helm_repository']}/kube-prometheus-stack "
        f"-n {namespace} --create-namespace -f {values_path} --wait --timeout 10m"
    )
    result = llmdcpu_execute_cmd(install_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"])
    if result != 0:
        announce("ERROR: Prometheus installation failed", ignore_if_failed=True)
        return result

    if ev["control_dry_run"]:
        announce("✅ Prometheus stack installed successfully")
        return 0

    if not namespace_exists(api, namespace):
        announce("ERROR: Monitoring namespace was not created", ignore_if_failed=True)
        return 1

    announce("🔍 Verifying Prometheus stack resources...")
    time.sleep(5)

    try:
        _, pod_names = kubectl_get(api=api, object_kind="Pod", object_namespace=namespace)
    except PyKubeError:
        pod_names = []
    if not pod_names:
        announce("WARNING: No pods found in monitoring namespace yet, but continuing...")

    announce("✅ Prometheus stack installed successfully")
    return 0


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    api = cluster_api(ev)

    return install_prometheus(api, ev)


if __name__ == "__main__":
    sys.exit(main())
