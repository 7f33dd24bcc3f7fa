#!/usr/bin/env python3

import importlib
import os
import sys
from optparse import OptionParser

import requests
from pykube.exceptions import PyKubeError

from llmd_cpu.functions import (
    ENV_PREFIX,
    announce,
    capture_cmd,
    check_command,
    cluster_api,
    derive_names,
    environment_variable_to_dict,
    kill_port_forward,
    kubectl_delete,
    llmdcpu_execute_cmd,
    prompt_yes_no,
    remove_minikube_volumes,
    resolve_driver,
)

start_cluster = importlib.import_module("llmd_cpu.steps.02_start_cluster")


def namespace_present(ev: dict) -> bool:
    ecode, _ = capture_cmd(
        f'{ev["control_kcmd"]} --context {ev["cluster_context"]} get namespace {ev["deploy_namespace"]}'
    )
    return ecode == 0


def remove_deployment(ev: dict) -> int:
    """helmfile destroy, then delete the HTTPRoute and the namespace. Failures are only reported."""
    namespace = ev["deploy_namespace"]
    dry_run = ev["control_dry_run"]

    announce("🧹 Removing Helm deployments...")
    deploy_charts = importlib.import_module("llmd_cpu.steps.06_deploy_charts")
    try:
        helmfile_path = deploy_charts.write_helmfile(ev)
        llmdcpu_execute_cmd(
            f"helmfile destroy -f {helmfile_path} -n {namespace}",
            dry_run=dry_run,
            verbose=ev["control_verbose"],
        )
    except OSError as e:
        announce(f"WARNING: Unable to create helmfile, skipping helmfile destroy: {e}")

    api = cluster_api(ev, ignore_if_failed=True)
    if api is None and not dry_run:
        announce(f"WARNING: Unable to reach the cluster, namespace \"{namespace}\" was not deleted")
        return 1

    failures = 0
    for object_api, object_kind, object_name, object_namespace in [
        ("gateway.networking.k8s.io/v1", "HTTPRoute", ev["deploy_httproute_name"], namespace),
        ("", "Namespace", namespace, ""),
    ]:
        try:
            kubectl_delete(
                api=api,
                object_api=object_api,
                object_kind=object_kind,
                object_name=object_name,
                object_namespace=object_namespace,
                dry_run=dry_run,
            )
        except (PyKubeError, requests.RequestException, ValueError) as e:
            announce(f"WARNING: Unable to delete {object_kind} \"{object_name}\": {e}")
            failures += 1

    if failures:
        return 1

    announce(f"✅ Namespace \"{namespace}\" deleted")
    return 0


def remove_minikube(ev: dict) -> int:
    profile = ev["cluster_profile"]
    dry_run = ev["control_dry_run"]
    verbose = ev["control_verbose"]

    if not start_cluster.minikube_profile_exists(profile):
        announce(f"ℹ️ Minikube profile '{profile}' not found")
        return 0

    if ev["control_non_interactive"] or prompt_yes_no("Delete Minikube cluster and reclaim disk space?", ev):
        announce("🧹 Deleting Minikube cluster...")
        ecode = llmdcpu_execute_cmd(f"minikube delete -p {profile}", dry_run=dry_run, verbose=verbose, silent=False)
        if ecode == 0:
            announce("✅ Minikube cluster deleted")
        return ecode

    announce("ℹ️ Stopping Minikube cluster...")
    llmdcpu_execute_cmd(f"minikube stop -p {profile} || true", dry_run=dry_run, verbose=verbose)
    announce(f"ℹ️ Minikube cluster stopped (use 'minikube start -p {profile}' to restart)")
    return 0


def remove_kind(ev: dict) -> int:
    profile = ev["cluster_profile"]

    if not start_cluster.kind_cluster_exists(profile):
        announce(f"ℹ️ kind cluster '{profile}' not found")
        return 0

    if not ev["control_non_interactive"] and not prompt_yes_no("Delete kind cluster?", ev):
        announce(f"ℹ️ Keeping kind cluster '{profile}'")
        return 0

    provider_env = "KIND_EXPERIMENTAL_PROVIDER=podman " if ev["cluster_driver"] == "podman" else ""
    announce("🧹 Deleting kind cluster...")
    ecode = llmdcpu_execute_cmd(
        f"{provider_env}kind delete cluster --name {profile}",
        dry_run=ev["control_dry_run"],
        verbose=ev["control_verbose"],
        silent=False,
    )
    if ecode == 0:
        announce("✅ kind cluster deleted")
    return ecode


def run_teardown(ev: dict) -> int:
    announce("🧹 Starting teardown...")

    if namespace_present(ev):
        remove_deployment(ev)
    else:
        announce(f'ℹ️ Namespace "{ev["deploy_namespace"]}" not found, skipping Helm cleanup')

    if ev["cluster_provider"] == "kind":
        result = remove_kind(ev)
    else:
        result = remove_minikube(ev)

    driver = resolve_driver(ev["cluster_driver"])
    if driver == "podman" and check_command("podman") and ev["cluster_provider"] == "minikube":
        announce("🧹 Cleaning up Podman volumes...")
        remove_minikube_volumes(ev)

    kill_port_forward(ev, ev["deploy_release_infra"])

    if result != 0:
        announce(f"ERROR: Teardown finished with errors (exit code: {result})", ignore_if_failed=True)
        return result

    announce("✅ Teardown complete!")
    return 0


def main(argv: list = None) -> int:
    parser = OptionParser(description="Remove the llm-d CPU inference deployment and its local cluster.")
    parser.add_option(
        "--cluster-provider", dest="cluster_provider", type="choice", choices=["minikube", "kind"]
    )
    parser.add_option("--non-interactive", action="store_true", dest="non_interactive", default=False)
    parser.add_option("-n", "--dry-run", action="store_true", dest="dry_run", default=False)
    parser.add_option("-v", "--verbose", action="store_true", dest="verbose", default=False)
    options, _ = parser.parse_args(argv)

    os.environ[f"{ENV_PREFIX}CURRENT_STEP_NAME"] = "teardown"
    ev = {"current_step_name": "teardown"}
    environment_variable_to_dict(ev)

    if options.cluster_provider:
        ev["cluster_provider"] = options.cluster_provider
    if options.non_interactive:
        ev["control_non_interactive"] = True
    if options.dry_run:
        ev["control_dry_run"] = True
    if options.verbose:
        ev["control_verbose"] = True
    derive_names(ev)

    return run_teardown(ev)


if __name__ == "__main__":
    sys.exit(main())
