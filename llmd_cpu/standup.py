#!/usr/bin/env python3

"""
Stand up llm-d CPU inference scheduling on a local cluster.

Runs the numbered modules under llmd_cpu/steps in order. Every step exposes
main(ev) and returns 0 on success; the first non-zero code aborts the run.
"""

import importlib
import os
import re
import sys
from optparse import OptionParser
from pathlib import Path

from llmd_cpu import teardown
from llmd_cpu.functions import ENV_PREFIX, announce, derive_names, environment_variable_to_dict

STEPS_DIR = Path(__file__).resolve().parent / "steps"

STEP_FILE_PATTERN = re.compile(r"^\d\d_.*\.py$")


def get_step_list(steps_dir: Path = STEPS_DIR) -> list:
    """Module names of the numbered steps, in execution order."""
    return sorted(Path(f).stem for f in os.listdir(steps_dir) if STEP_FILE_PATTERN.match(f))


def select_steps(selection: str, step_names: list) -> list:
    """
    Filter step_names by a selection such as "3", "0,2,5" or "3-6".

    An empty selection keeps every step.
    """
    if not selection:
        return list(step_names)

    wanted = set()
    for part in selection.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            first, last = part.split("-", 1)
            wanted.update(range(int(first), int(last) + 1))
        else:
            wanted.add(int(part))

    return [name for name in step_names if int(name.split("_", 1)[0]) in wanted]


def run_step(step_name: str, ev: dict) -> int:
    os.environ[f"{ENV_PREFIX}CURRENT_STEP_NAME"] = step_name
    ev["current_step_name"] = step_name

    module = importlib.import_module(f"llmd_cpu.steps.{step_name}")
    return module.main(ev)


def run_steps(ev: dict, step_names: list) -> int:
    for step_name in step_names:
        announce(f"=== Running step: {step_name} ===")
        result = run_step(step_name, ev)
        if result != 0:
            announce(f"ERROR: Step \"{step_name}\" failed (exit code: {result})", ignore_if_failed=True)
            return result
    return 0


def parse_args(argv: list = None):
    parser = OptionParser(description="Deploy llm-d CPU inference scheduling on a local Kubernetes cluster.")
    parser.add_option("--driver", dest="driver", help="container runtime for the cluster: podman, docker or auto")
    parser.add_option("--gpu", action="store_true", dest="gpu", default=False, help="pass --gpus all to minikube")
    parser.add_option(
        "--cluster-provider",
        dest="cluster_provider",
        type="choice",
        choices=["minikube", "kind"],
        help="local cluster tool (default minikube)",
    )
    parser.add_option("--teardown", action="store_true", dest="teardown", default=False, help="remove the deployment")
    parser.add_option(
        "--non-interactive", action="store_true", dest="non_interactive", default=False, help="never prompt"
    )
    parser.add_option("-s", "--steps", dest="steps", default="", help='steps to run, e.g. "0-3" or "5,6,7"')
    parser.add_option("-n", "--dry-run", action="store_true", dest="dry_run", default=False)
    parser.add_option("-v", "--verbose", action="store_true", dest="verbose", default=False)

    options, args = parser.parse_args(argv)
    if args:
        parser.error(f"unexpected arguments: {' '.join(args)}")
    return options


def apply_options(ev: dict, options) -> dict:
    if options.driver:
        ev["cluster_driver"] = options.driver.lower()
    if options.gpu:
        ev["cluster_enable_gpu"] = True
    if options.cluster_provider:
        ev["cluster_provider"] = options.cluster_provider
    if options.non_interactive:
        ev["control_non_interactive"] = True
    if options.dry_run:
        ev["control_dry_run"] = True
    if options.verbose:
        ev["control_verbose"] = True
    return derive_names(ev)


def main(argv: list = None) -> int:
    options = parse_args(argv)

    ev = {"current_step_name": "standup"}
    environment_variable_to_dict(ev)
    apply_options(ev, options)

    if options.teardown:
        return teardown.run_teardown(ev)

    step_names = get_step_list()
    try:
        selected = select_steps(options.steps, step_names)
    except ValueError:
        announce(f"ERROR: Invalid step selection \"{options.steps}\"", ignore_if_failed=True)
        return 1

    if not selected:
        announce(f"ERROR: No steps match \"{options.steps}\"", ignore_if_failed=True)
        return 1

    announce("🚀 Starting llm-d CPU inference scheduling deployment")
    announce(f'ℹ️ Cluster provider: {ev["cluster_provider"]}, profile: {ev["cluster_profile"]}')
    if ev["control_dry_run"]:
        announce("ℹ️ Dry run: commands are logged, not executed")

    return run_steps(ev, selected)


if __name__ == "__main__":
    sys.exit(main())
