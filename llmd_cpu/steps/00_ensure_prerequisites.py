#!/usr/bin/env python3

import os
import sys

from llmd_cpu.functions import (
    announce,
    check_command,
    environment_variable_to_dict,
    is_darwin,
    is_linux,
    llmdcpu_execute_cmd,
    prompt_yes_no,
)

INSTALL_HINTS = {
    "minikube": "https://minikube.sigs.k8s.io/docs/start/",
    "kind": "https://kind.sigs.k8s.io/docs/user/quick-start/#installation",
    "helmfile": "https://helmfile.readthedocs.io/en/latest/#installation",
}


def required_tools(ev: dict) -> list:
    tools = [ev["control_kcmd"], ev["control_hcmd"], "helmfile", ev["cluster_provider"]]

    if ev["cluster_driver"] in ["podman", "docker"]:
        tools.append(ev["cluster_driver"])

    return tools


def ensure_prerequisites(ev: dict) -> int:
    """
    Check that every CLI the deployment drives is installed.

    On macOS, missing tools can be installed through brew after confirmation.
    Elsewhere the installation hints are printed and the step fails.

    Returns:
        int: 0 for success, non-zero for failure
    """
    announce("🔍 Checking for required tools...")

    missing_tools = [tool for tool in required_tools(ev) if not check_command(tool)]

    if missing_tools:
        for tool in missing_tools:
            announce(f"ERROR: Required command not found: {tool}", ignore_if_failed=True)

        announce(f"WARNING: Missing tools: {' '.join(missing_tools)}")

        if is_darwin():
            install_cmd = f"brew install {' '.join(missing_tools)}"
            announce(f"ℹ️ Install with: {install_cmd}")
            if prompt_yes_no("Would you like to install them now?", ev):
                ecode = llmdcpu_execute_cmd(
                    install_cmd,
                    dry_run=ev["control_dry_run"],
                    verbose=ev["control_verbose"],
                    silent=False,
                )
                if ecode != 0:
                    announce(f"ERROR: Failed while running \"{install_cmd}\" (exit code: {ecode})", ignore_if_failed=True)
                return ecode

            announce("ERROR: Cannot proceed without required tools", ignore_if_failed=True)
            return 1

        if is_linux():
            for tool in missing_tools:
                if tool in INSTALL_HINTS:
                    announce(f"ℹ️ Install {tool}: {INSTALL_HINTS[tool]}")
            announce("ℹ️ Install other tools with your package manager")
        return 1

    announce("✅ All required tools are installed")
    return 0


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    return ensure_prerequisites(ev)


if __name__ == "__main__":
    sys.exit(main())
