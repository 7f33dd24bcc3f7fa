#!/usr/bin/env python3

import os
import sys

from llmd_cpu.functions import (
    announce,
    check_command,
    ensure_podman_machine,
    environment_variable_to_dict,
    host_arch,
    is_darwin,
    is_linux,
    resolve_driver,
)


def describe_platform() -> str:
    if is_darwin():
        if host_arch() == "arm64":
            return "Apple Silicon Mac detected"
        return "Intel Mac detected"

    if is_linux():
        if check_command("nvidia-smi"):
            return "Linux with NVIDIA GPU detected"
        return "Linux detected"

    return f"Unrecognized platform ({sys.platform}) detected"


def detect_platform(ev: dict) -> int:
    announce("🔍 Detecting platform and available drivers...")
    announce(f"ℹ️ {describe_platform()}")

    driver = resolve_driver(ev["cluster_driver"])
    if not driver:
        announce("ERROR: No container runtime found. Please install Docker or Podman.", ignore_if_failed=True)
        return 1

    if ev["cluster_driver"] == "auto":
        announce(f"ℹ️ {driver.capitalize()} detected, using {driver} driver")
    else:
        announce(f"ℹ️ Using driver: {driver}")

    ev["cluster_driver"] = driver
    ev["control_ccmd"] = driver

    if is_darwin() and host_arch() == "arm64" and driver == "docker":
        announce("ℹ️ Mac Metal acceleration available (automatic with Docker Desktop)")

    if driver == "podman" and is_darwin():
        # the machine must be larger than the cluster it hosts
        return ensure_podman_machine(
            ev,
            cpus=ev["podman_machine_cpus"],
            memory_mb=ev["podman_machine_memory"],
            disk_gb=ev["podman_machine_disk"],
            min_cpus=ev["podman_machine_min_cpus"],
            check_cgroups=True,
        )

    return 0


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    return detect_platform(ev)


if __name__ == "__main__":
    sys.exit(main())
