#!/usr/bin/env python3

import os
import sys

import pykube

from llmd_cpu.functions import (
    announce,
    cluster_api,
    environment_variable_to_dict,
    wait_for_pods,
)


def wait_for_deployment(api: pykube.HTTPClient, ev: dict) -> int:
    announce("⏳ Waiting for deployment to be ready...")
    announce("ℹ️ This may take 5-10 minutes as vLLM compiles the model on CPU...")

    namespace = ev["deploy_namespace"]
    for component, selector, expected, timeout in [
        ("EPP", ev["deploy_epp_selector"], 1, ev["deploy_epp_wait_timeout"]),
        ("gateway", ev["deploy_gateway_selector"], 1, ev["deploy_gateway_wait_timeout"]),
        ("model service", ev["deploy_model_selector"], ev["deploy_decode_replicas"], ev["deploy_model_wait_timeout"]),
    ]:
        if component == "model service":
            announce("ℹ️ Waiting for model service pods (this is the slow part - model loading + compilation)...")
        result = wait_for_pods(api, ev, namespace, selector, expected, timeout)
        if result != 0:
            return result

    announce("✅ All pods are ready!")
    return 0


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    api = cluster_api(ev)

    return wait_for_deployment(api, ev)


if __name__ == "__main__":
    sys.exit(main())
