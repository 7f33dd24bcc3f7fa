#!/usr/bin/env python3

import os
import sys

from llmd_cpu.functions import (
    announce,
    capture_cmd,
    capture_json,
    environment_variable_to_dict,
    is_darwin,
    llmdcpu_execute_cmd,
    remove_minikube_volumes,
    resolve_driver,
)


def minikube_profile_exists(profile: str) -> bool:
    profiles = capture_json("minikube profile list -o json", default={})
    if not isinstance(profiles, dict):
        return False
    return any(p.get("Name") == profile for p in profiles.get("valid") or [])


def minikube_host_status(profile: str) -> str:
    # "minikube status" exits non-zero for stopped clusters but still prints the json
    status = capture_json(f"minikube status -p {profile} -o json", default={})
    if isinstance(status, list):
        status = status[0] if status else {}
    return status.get("Host") or "Stopped"


def podman_container_exists(profile: str) -> bool:
    ecode, _ = capture_cmd(f"podman container exists {profile}")
    return ecode == 0


def kind_cluster_exists(profile: str) -> bool:
    _, stdout = capture_cmd("kind get clusters")
    return profile in stdout.split()


def minikube_start_args(ev: dict) -> list:
    start_args = [
        f'-p {ev["cluster_profile"]}',
        f'--driver={ev["cluster_driver"]}',
        f'--memory={ev["cluster_memory"]}',
        f'--cpus={ev["cluster_cpus"]}',
        f'--disk-size={ev["cluster_disk"]}',
    ]

    if ev["cluster_driver"] == "podman" and is_darwin():
        announce("ℹ️ Configuring Minikube for cgroup v2 (Podman libkrun)...")
        start_args += [
            "--extra-config=kubelet.cgroup-driver=systemd",
            "--extra-config=kubeadm.ignore-preflight-errors=SystemVerification",
        ]

    if ev["cluster_enable_gpu"]:
        announce("ℹ️ Enabling GPU support...")
        start_args.append("--gpus all")

    return start_args


def use_cluster_context(ev: dict) -> int:
    for cmd in [
        f'{ev["control_kcmd"]} config use-context {ev["cluster_context"]}',
        f'{ev["control_kcmd"]} cluster-info',
    ]:
        ecode = llmdcpu_execute_cmd(cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"], silent=False)
        if ecode != 0:
            announce(f"ERROR: Failed while running \"{cmd}\" (exit code: {ecode})", ignore_if_failed=True)
            return ecode

    announce(f'✅ {ev["cluster_provider"].capitalize()} cluster is ready')
    return 0


def start_existing_minikube(ev: dict) -> int:
    profile = ev["cluster_profile"]

    if minikube_host_status(profile) != "Running":
        announce("🚀 Starting existing Minikube cluster...")
        start_cmd = f"minikube start -p {profile}"
        ecode = llmdcpu_execute_cmd(start_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"], silent=False)
        if ecode != 0:
            announce(f"ERROR: Failed while running \"{start_cmd}\" (exit code: {ecode})", ignore_if_failed=True)
            return ecode
    else:
        announce("✅ Minikube cluster is already running")

    return use_cluster_context(ev)


def start_minikube(ev: dict) -> int:
    """
    Start (or reuse) the minikube profile.

    A profile whose podman container disappeared is deleted together with its
    volumes and recreated from scratch.

    Returns:
        int: 0 for success, non-zero for failure
    """
    profile = ev["cluster_profile"]
    announce("🚀 Starting Minikube cluster...")

    if minikube_profile_exists(profile):
        announce(f"ℹ️ Minikube profile '{profile}' already exists")

        if ev["cluster_driver"] != "podman" or podman_container_exists(profile):
            return start_existing_minikube(ev)

        announce("WARNING: Minikube profile exists but Podman container is missing")
        announce("🧹 Cleaning up orphaned profile and volumes...")
        remove_minikube_volumes(ev)
        llmdcpu_execute_cmd(
            f"minikube delete -p {profile}",
            dry_run=ev["control_dry_run"],
            verbose=ev["control_verbose"],
        )
        announce("ℹ️ Will create fresh Minikube cluster...")

    announce(
        f'ℹ️ Creating new Minikube cluster ({ev["cluster_memory"]}MB RAM, {ev["cluster_cpus"]} CPUs, {ev["cluster_disk"]} disk)...'
    )
    start_cmd = f"minikube start {' '.join(minikube_start_args(ev))}"
    ecode = llmdcpu_execute_cmd(start_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"], silent=False)
    if ecode != 0:
        announce(f"ERROR: Failed while running \"{start_cmd}\" (exit code: {ecode})", ignore_if_failed=True)
        return ecode

    return use_cluster_context(ev)


def start_kind(ev: dict) -> int:
    profile = ev["cluster_profile"]
    announce("🚀 Starting kind cluster...")

    if kind_cluster_exists(profile):
        announce(f"✅ kind cluster '{profile}' already exists")
        return use_cluster_context(ev)

    provider_env = ""
    if ev["cluster_driver"] == "podman":
        provider_env = "KIND_EXPERIMENTAL_PROVIDER=podman "

    if ev["cluster_enable_gpu"]:
        announce("WARNING: GPU support is not configured for kind clusters, ignoring")

    start_cmd = f"{provider_env}kind create cluster --name {profile}"
    ecode = llmdcpu_execute_cmd(start_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"], silent=False)
    if ecode != 0:
        announce(f"ERROR: Failed while running \"{start_cmd}\" (exit code: {ecode})", ignore_if_failed=True)
        return ecode

    return use_cluster_context(ev)


def start_cluster(ev: dict) -> int:
    ev["cluster_driver"] = resolve_driver(ev["cluster_driver"])

    if ev["cluster_provider"] == "minikube":
        return start_minikube(ev)
    elif ev["cluster_provider"] == "kind":
        return start_kind(ev)

    announce(f'ERROR: Unknown cluster provider "{ev["cluster_provider"]}" (expected "minikube" or "kind")', ignore_if_failed=True)
    return 1


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    return start_cluster(ev)


if __name__ == "__main__":
    sys.exit(main())
