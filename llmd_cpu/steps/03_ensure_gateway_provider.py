#!/usr/bin/env python3

import os
import sys
from pathlib import Path

import pykube
from pykube.exceptions import PyKubeError

from llmd_cpu.functions import (
    announce,
    cluster_api,
    environment_variable_to_dict,
    kubectl_get,
    llmdcpu_execute_cmd,
    wait_for_pods,
)

GATEWAY_API_CRDS = [
    "gatewayclasses.gateway.networking.k8s.io",
    "gateways.gateway.networking.k8s.io",
    "grpcroutes.gateway.networking.k8s.io",
    "httproutes.gateway.networking.k8s.io",
    "referencegrants.gateway.networking.k8s.io",
]

GATEWAY_API_INFERENCE_EXTENSION_CRDS = [
    "inferencepools.inference.networking.k8s.io",
    "inferenceobjectives.inference.networking.x-k8s.io",
]

ISTIO_CRDS = [
    "authorizationpolicies.security.istio.io",
    "destinationrules.networking.istio.io",
    "envoyfilters.networking.istio.io",
    "gateways.networking.istio.io",
    "peerauthentications.security.istio.io",
    "sidecars.networking.istio.io",
    "virtualservices.networking.istio.io",
]


def missing_crds(crd_names: list, required: list) -> list:
    return [crd for crd in required if crd not in crd_names]


def install_gateway_api_crds(ev: dict, should_install: bool) -> int:
    """
    Install Gateway API crds.

    Args:
        ev: Environment variables dictionary
        should_install: If False, the crds were found and nothing is done

    Returns:
        int: 0 for success, non-zero for failure
    """
    ecode = 0
    announce(f"🚀 Installing Kubernetes Gateway API ({ev['gateway_api_crd_revision']}) CRDs...")
    if should_install:
        install_crds_cmd = f"{ev['control_kcmd']} apply -k https://github.com/kubernetes-sigs/gateway-api/config/crd/?ref={ev['gateway_api_crd_revision']}"
        ecode = llmdcpu_execute_cmd(actual_cmd=install_crds_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"])
        if ecode != 0:
            announce(f"ERROR: Failed while running \"{install_crds_cmd}\" (exit code: {ecode})", ignore_if_failed=True)
        else:
            announce(f"✅ Kubernetes Gateway API ({ev['gateway_api_crd_revision']}) CRDs installed")
    else:
        announce("✅ Kubernetes Gateway API (unknown version) CRDs already installed (*.gateway.networking.k8s.io CRDs found)")

    return ecode


def install_gateway_api_extension_crds(ev: dict, should_install: bool) -> int:
    """
    Install Gateway API inference extension crds.

    Args:
        ev: Environment variables dictionary
        should_install: If False, the crds were found and nothing is done

    Returns:
        int: 0 for success, non-zero for failure
    """
    ecode = 0
    revision = ev['gateway_api_inference_extension_crd_revision']
    announce(f"🚀 Installing Kubernetes Gateway API inference extension ({revision}) CRDs...")
    if should_install:
        install_crds_cmd = f"{ev['control_kcmd']} apply -k https://github.com/kubernetes-sigs/gateway-api-inference-extension/config/crd/?ref={revision}"
        ecode = llmdcpu_execute_cmd(actual_cmd=install_crds_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"])
        if ecode != 0:
            announce(f"ERROR: Failed while running \"{install_crds_cmd}\" (exit code: {ecode})", ignore_if_failed=True)
        else:
            announce(f"✅ Kubernetes Gateway API inference extension CRDs {revision} installed")
    else:
        announce("✅ Kubernetes Gateway API inference extension (unknown version) CRDs already installed (*.inference.networking CRDs found)")

    return ecode


def write_istio_helmfile(ev: dict) -> Path:
    helm_base_dir = Path(ev["control_work_dir"]) / "setup" / "helm"
    helm_base_dir.mkdir(parents=True, exist_ok=True)
    helmfile_path = helm_base_dir / "istio.helmfile.yaml"
    with open(helmfile_path, 'w') as f:
        f.write(f"""
repositories:
  - name: istio
    url: {ev["gateway_provider_istio_helm_repository_url"]}
releases:
  - name: istio-base
    chart: istio/base
    version: {ev["gateway_provider_istio_chart_version"]}
    namespace: istio-system
    installed: true
    labels:
      type: gateway-provider
      kind: gateway-crds

  - name: istiod
    chart: istio/istiod
    version: {ev["gateway_provider_istio_chart_version"]}
    namespace: istio-system
    installed: true
    needs:
      - istio-system/istio-base
    values:
      - meshConfig:
          defaultConfig:
            proxyMetadata:
              ENABLE_GATEWAY_API_INFERENCE_EXTENSION: true
        pilot:
          env:
            ENABLE_GATEWAY_API_INFERENCE_EXTENSION: true
        tag: {ev["gateway_provider_istio_chart_version"]}
        hub: "docker.io/istio"
    labels:
      type: gateway-provider
      kind: gateway-control-plane
""")
    return helmfile_path


def install_istio(ev: dict, should_install: bool) -> int:
    """
    Install the istio gateway control plane through helmfile.

    Returns:
        int: 0 for success, non-zero for failure
    """
    try:
        helmfile_path = write_istio_helmfile(ev)
    except OSError as e:
        announce(f"ERROR: Unable to create istio helmfile: {e}", ignore_if_failed=True)
        return 1

    ecode = 0
    if should_install:
        install_cmd = f"helmfile sync -f {helmfile_path}"

        announce(f"🚀 Installing istio helm charts from {ev['gateway_provider_istio_helm_repository_url']} ({ev['gateway_provider_istio_chart_version']})")
        ecode = llmdcpu_execute_cmd(actual_cmd=install_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"])
        if ecode != 0:
            announce(f"ERROR: Failed while running \"{install_cmd}\" (exit code: {ecode})", ignore_if_failed=True)
            return ecode
        announce(f"✅ istio ({ev['gateway_provider_istio_chart_version']}) installed")
    else:
        announce("✅ istio (unknown version) already installed (*.istio.io CRDs found)")

    return ecode


def ensure_gateway_provider(api: pykube.HTTPClient, ev: dict) -> int:
    """
    Install Gateway API, the inference extension CRDs and istio, then wait for istiod.

    Returns:
        int: 0 for success, non-zero for failure
    """
    announce("🔍 Ensuring gateway infrastructure (provider istio) is setup...")

    crd_names = []
    if api is not None:
        try:
            _, crd_names = kubectl_get(api=api, object_kind="CustomResourceDefinition")
        except PyKubeError as e:
            announce(f"WARNING: Unable to list CustomResourceDefinitions ({e}), will (re)install all of them")

    result = install_gateway_api_crds(ev, bool(missing_crds(crd_names, GATEWAY_API_CRDS)))
    if result != 0:
        return result

    result = install_gateway_api_extension_crds(ev, bool(missing_crds(crd_names, GATEWAY_API_INFERENCE_EXTENSION_CRDS)))
    if result != 0:
        return result

    result = install_istio(ev, bool(missing_crds(crd_names, ISTIO_CRDS)))
    if result != 0:
        return result

    result = wait_for_pods(api, ev, "istio-system", "app=istiod", 1, ev["deploy_istiod_wait_timeout"])
    if result == 0:
        announce("✅ Gateway control plane (provider istio) installed.")
    return result


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    if ev["control_dry_run"]:
        announce("DRY RUN enabled. No actual changes will be made.")

    api = cluster_api(ev)

    return ensure_gateway_provider(api, ev)


if __name__ == "__main__":
    sys.exit(main())
