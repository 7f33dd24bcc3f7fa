#!/usr/bin/env python3

import os
import subprocess
import sys
import time

import requests

from llmd_cpu.benchmark.client import chat_completion, list_models, user_message
from llmd_cpu.functions import (
    announce,
    environment_variable_to_dict,
    kill_port_forward,
)


def setup_port_forward(ev: dict) -> int:
    announce("🔌 Setting up port forwarding...")

    service = ev["deploy_gateway_service"]
    kill_port_forward(ev, service)

    forward_cmd = [
        ev["control_kcmd"],
        "port-forward",
        "-n",
        ev["deploy_namespace"],
        f"svc/{service}",
        f'{ev["deploy_local_port"]}:80',
    ]

    if ev["control_dry_run"]:
        announce(f'---> would have executed the command "{" ".join(forward_cmd)}" in background')
        return 0

    try:
        with open(ev["deploy_port_forward_log"], "w") as log:
            # detached so the forward outlives this process
            subprocess.Popen(forward_cmd, stdout=log, stderr=subprocess.STDOUT, start_new_session=True)
    except OSError as e:
        announce(f"ERROR: Unable to start port forwarding: {e}", ignore_if_failed=True)
        return 1

    time.sleep(3)

    announce(f'✅ Port forwarding started on http://localhost:{ev["deploy_local_port"]}')
    return 0


def test_deployment(ev: dict) -> int:
    """
    Smoke test the gateway: list models, then run one chat completion.

    Returns:
        int: 0 for success, non-zero for failure
    """
    announce("🧪 Testing deployment...")

    if ev["control_dry_run"]:
        announce("[DRY RUN] Would have tested /v1/models and /v1/chat/completions")
        return 0

    announce("🔍 Testing /v1/models endpoint...")
    try:
        models = list_models(ev)
    except (requests.RequestException, ValueError, KeyError, TypeError) as e:
        announce(f"ERROR: Model endpoint test failed: {e}", ignore_if_failed=True)
        return 1

    if not models:
        announce("ERROR: Model endpoint test failed: no models listed", ignore_if_failed=True)
        return 1
    announce(f'✅ Model endpoint is responding (serving "{models[0]}")')

    announce("🔍 Testing inference endpoint...")
    result = chat_completion(ev, user_message("Say hello in one sentence."), max_tokens=20, temperature=0.7)
    if not result.ok or not result.content or result.content == "null":
        announce(f"ERROR: Inference test failed: {result.error or 'empty response'}", ignore_if_failed=True)
        return 1

    announce("✅ Inference test passed!")
    announce(f"ℹ️ Response: {result.content.strip()}")
    announce("✅ All tests passed!")
    return 0


def print_next_steps(ev: dict):
    namespace = ev["deploy_namespace"]
    kcmd = ev["control_kcmd"]
    monitoring = ev["monitoring_namespace"]
    release = ev["monitoring_release"]
    port = ev["deploy_local_port"]

    lines = [
        "",
        "Next steps:",
        f"  - Test inference: curl -s http://localhost:{port}/v1/models | jq",
        f"  - View logs: {kcmd} logs -n {namespace} -l {ev['deploy_model_selector']} -c {ev['vllm_container_name']} -f",
        f"  - Port forward Prometheus: {kcmd} port-forward -n {monitoring} svc/{release}-kube-prometheus-stack-prometheus 9090:9090",
        f"  - Port forward Grafana: {kcmd} port-forward -n {monitoring} svc/{release}-grafana 3000:80",
        f"  - Run a benchmark: llmd-cpu-benchmark quick",
        "",
        f"Cluster info ({ev['cluster_provider']}):",
        f"  - Profile: {ev['cluster_profile']}",
        f"  - Driver: {ev['cluster_driver']}",
    ]
    if ev["cluster_provider"] == "minikube":
        lines.append(f"  - Dashboard: minikube dashboard -p {ev['cluster_profile']}")
    lines += ["", "To teardown: llmd-cpu-deploy --teardown", ""]

    print("\n".join(lines))


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    result = setup_port_forward(ev)
    if result != 0:
        return result

    result = test_deployment(ev)
    if result != 0:
        return result

    announce("🎉 Deployment complete!")
    print_next_steps(ev)
    return 0


if __name__ == "__main__":
    sys.exit(main())
