#!/usr/bin/env python3

"""
Build the routing sidecar, EPP and CPU vLLM images and push them to the
container registry the deployment pulls from.
"""

import os
import shutil
import sys
from optparse import OptionParser
from pathlib import Path
from typing import Tuple

from llmd_cpu.functions import (
    ENV_PREFIX,
    announce,
    capture_cmd,
    capture_json,
    check_command,
    derive_names,
    ensure_podman_machine,
    environment_variable_to_dict,
    is_darwin,
    llmdcpu_execute_cmd,
    prompt_yes_no,
)

BUILD_TOOLS = ["podman", "git"]

IMAGE_LABELS = {
    "routing_sidecar": "routing sidecar",
    "epp": "EPP",
    "vllm": "llm-d-cpu",
}


def target_arch(ev: dict) -> str:
    """Architecture part of build_platform, e.g. arm64 for linux/arm64."""
    return ev["build_platform"].split("/")[-1]


def check_build_tools() -> int:
    announce("🔍 Checking for required tools...")
    missing = [tool for tool in BUILD_TOOLS if not check_command(tool)]
    if missing:
        announce(f"ERROR: Missing required tools: {' '.join(missing)}", ignore_if_failed=True)
        if is_darwin():
            announce(f"ℹ️ Install with: brew install {' '.join(missing)}")
        return 1

    announce("✅ All required tools are installed")
    return 0


def check_registry_login(ev: dict) -> int:
    """
    Make sure podman is logged into the registry.

    When the login differs from image_registry_username the user may adopt
    it, in which case the remote image references are derived again.
    """
    registry = ev["image_registry"]
    announce(f"🔍 Checking {registry} login...")

    ecode, username = capture_cmd(f"podman login {registry} --get-login")
    username = username.strip()
    if ecode != 0 or not username:
        if ev["control_dry_run"]:
            announce(f"WARNING: Not logged into {registry} (ignored during dry run)")
            return 0
        announce(f"ERROR: Not logged into {registry}", ignore_if_failed=True)
        announce(f"ℹ️ Please run: podman login {registry}")
        return 1

    announce(f"✅ Logged into {registry} as: {username}")

    configured = ev["image_registry_username"]
    if username != configured:
        announce(f"WARNING: Logged in as '{username}' but the registry username is set to '{configured}'")
        if not prompt_yes_no(f"Continue with username '{username}'?", ev):
            announce("ERROR: Registry username mismatch, aborting", ignore_if_failed=True)
            return 1
        ev["image_registry_username"] = username
        derive_names(ev)

    return 0


def image_exists(image: str) -> bool:
    images = capture_json("podman images --format json", default=[])
    if not isinstance(images, list):
        return False
    return any(image in (entry.get("Names") or []) for entry in images)


def clone_repository(ev: dict, git_url: str, git_ref: str, build_dir: Path) -> Tuple[int, Path]:
    """Clone git_url into build_dir (unless already there) and check out git_ref. Returns (exit code, repo dir)."""
    repo_dir = build_dir / Path(git_url).stem
    dry_run = ev["control_dry_run"]
    verbose = ev["control_verbose"]

    if not dry_run:
        build_dir.mkdir(parents=True, exist_ok=True)

    if not repo_dir.is_dir():
        ecode = llmdcpu_execute_cmd(f"git clone {git_url} {repo_dir}", dry_run=dry_run, verbose=verbose, silent=False)
        if ecode != 0:
            announce(f"ERROR: Unable to clone {git_url} (exit code: {ecode})", ignore_if_failed=True)
            return ecode, repo_dir

    ecode = llmdcpu_execute_cmd(f"git -C {repo_dir} checkout {git_ref}", dry_run=dry_run, verbose=verbose)
    if ecode != 0:
        announce(f"ERROR: Unable to check out \"{git_ref}\" in {repo_dir} (exit code: {ecode})", ignore_if_failed=True)
    return ecode, repo_dir


def patch_dockerfile_arch(dockerfile: Path, arch: str) -> bool:
    """Rewrite the hardcoded "ENV GOARCH=amd64". Returns True when the file changed."""
    content = dockerfile.read_text()
    patched = content.replace("ENV GOARCH=amd64", f"ENV GOARCH={arch}")
    if patched == content:
        return False
    dockerfile.write_text(patched)
    return True


def podman_build(ev: dict, image: str, context_dir, extra_args: list = None) -> int:
    build_cmd = " ".join(
        ["podman build", f'--platform={ev["build_platform"]}'] + (extra_args or []) + ["-t", image, str(context_dir)]
    )
    return llmdcpu_execute_cmd(build_cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"], silent=False)


def build_routing_sidecar(ev: dict, build_dir: Path) -> int:
    announce("🔨 Building routing sidecar...")
    image = ev["image_routing_sidecar_local"]

    if image_exists(image):
        announce("ℹ️ Routing sidecar image already exists locally, skipping build")
        return 0

    ecode, repo_dir = clone_repository(
        ev, ev["build_routing_sidecar_git_url"], ev["build_routing_sidecar_git_ref"], build_dir
    )
    if ecode != 0:
        return ecode

    ecode = podman_build(ev, image, repo_dir)
    if ecode == 0:
        announce("✅ Routing sidecar built")
    return ecode


def build_epp(ev: dict, build_dir: Path) -> int:
    announce("🔨 Building EPP (Gateway API Inference Extension)...")
    image = ev["image_epp_local"]

    if image_exists(image):
        announce("ℹ️ EPP image already exists locally, skipping build")
        return 0

    ecode, repo_dir = clone_repository(ev, ev["build_epp_git_url"], ev["build_epp_git_ref"], build_dir)
    if ecode != 0:
        return ecode

    arch = target_arch(ev)
    announce(f"ℹ️ Patching Dockerfile for {arch}...")
    dockerfile = repo_dir / "Dockerfile"
    if ev["control_dry_run"]:
        announce(f'[DRY RUN] Would have replaced "ENV GOARCH=amd64" with "ENV GOARCH={arch}" in {dockerfile}')
    else:
        try:
            if not patch_dockerfile_arch(dockerfile, arch):
                announce(f"WARNING: {dockerfile} has no \"ENV GOARCH=amd64\" line, building unpatched")
        except OSError as e:
            announce(f"ERROR: Unable to patch {dockerfile}: {e}", ignore_if_failed=True)
            return 1

    ecode = podman_build(ev, image, repo_dir)
    if ecode == 0:
        announce("✅ EPP built")
    return ecode


def build_vllm(ev: dict) -> int:
    announce("🔨 Building llm-d-cpu (vLLM)...")
    announce("WARNING: This takes 15-30 minutes - building vLLM from source")
    image = ev["image_vllm_local"]

    if image_exists(image):
        announce("ℹ️ llm-d-cpu image already exists locally, skipping build")
        return 0

    source_dir = Path(ev["build_vllm_source_dir"]).resolve()
    ecode = podman_build(
        ev,
        image,
        source_dir,
        [
            f"--build-arg TARGETARCH={target_arch(ev)}",
            f'--build-arg PYTHON_VERSION={ev["build_vllm_python_version"]}',
            f'--build-arg max_jobs={ev["build_vllm_max_jobs"]}',
            "-f",
            str(source_dir / ev["build_vllm_dockerfile"]),
        ],
    )
    if ecode == 0:
        announce("✅ llm-d-cpu built")
    return ecode


def tag_and_push(ev: dict, image_key: str) -> int:
    local_image = ev[f"image_{image_key}_local"]
    remote_image = ev[f"image_{image_key}_remote"]
    label = IMAGE_LABELS[image_key]

    announce(f'🚀 Tagging and pushing {label} to {ev["image_registry"]}...')
    for cmd in [f"podman tag {local_image} {remote_image}", f"podman push {remote_image}"]:
        ecode = llmdcpu_execute_cmd(
            cmd, dry_run=ev["control_dry_run"], verbose=ev["control_verbose"], silent=False, attempts=2
        )
        if ecode != 0:
            announce(f"ERROR: Failed while running \"{cmd}\" (exit code: {ecode})", ignore_if_failed=True)
            return ecode

    announce(f"✅ {label} pushed to {remote_image}")
    return 0


def print_summary(ev: dict):
    registry = ev["image_registry"]
    username = ev["image_registry_username"]
    print("")
    print("==========================================")
    announce(f"✅ All images built and pushed to {registry}!")
    print("==========================================")
    print("")
    print("Images available at:")
    for i, image_key in enumerate(IMAGE_LABELS, start=1):
        print(f'  {i}. {ev[f"image_{image_key}_remote"]}')
    print("")
    print("To make these images public (optional):")
    for i, image_key in enumerate(IMAGE_LABELS, start=1):
        print(f'  {i}. Visit https://{registry}/repository/{username}/{ev[f"image_{image_key}_name"]}?tab=settings')
    print(f"  {len(IMAGE_LABELS) + 1}. Change visibility to 'Public'")
    print("")
    print("Next steps:")
    print(f"  - Deploy with these images: LLMDCPU_IMAGE_REGISTRY_USERNAME={username} llmd-cpu-deploy")
    print("")


def build_and_push(ev: dict) -> int:
    announce(f'🚀 Starting build and push to {ev["image_registry"]}...')

    result = check_build_tools()
    if result != 0:
        return result

    result = ensure_podman_machine(
        ev,
        cpus=ev["podman_build_machine_cpus"],
        memory_mb=ev["podman_build_machine_memory"],
        disk_gb=ev["podman_build_machine_disk"],
        require_rootful=True,
    )
    if result != 0:
        return result

    result = check_registry_login(ev)
    if result != 0:
        return result

    build_dir = Path(f'{ev["build_dir_prefix"]}-{os.getpid()}')

    steps = [
        ("Building routing sidecar", lambda: build_routing_sidecar(ev, build_dir)),
        ("Building EPP", lambda: build_epp(ev, build_dir)),
        ("Building llm-d-cpu (this is the slow one)", lambda: build_vllm(ev)),
        ("Pushing routing sidecar", lambda: tag_and_push(ev, "routing_sidecar")),
        ("Pushing EPP", lambda: tag_and_push(ev, "epp")),
        ("Pushing llm-d-cpu", lambda: tag_and_push(ev, "vllm")),
    ]
    try:
        for i, (title, step) in enumerate(steps, start=1):
            announce(f"ℹ️ Step {i}/{len(steps)}: {title}")
            result = step()
            if result != 0:
                announce(f"ERROR: {title} failed (exit code: {result})", ignore_if_failed=True)
                return result
    finally:
        announce("🧹 Cleaning up build directory...")
        shutil.rmtree(build_dir, ignore_errors=True)

    print_summary(ev)
    return 0


def main(argv: list = None) -> int:
    parser = OptionParser(description="Build the llm-d CPU images and push them to the registry.")
    parser.add_option("--non-interactive", action="store_true", dest="non_interactive", default=False)
    parser.add_option("-n", "--dry-run", action="store_true", dest="dry_run", default=False)
    parser.add_option("-v", "--verbose", action="store_true", dest="verbose", default=False)
    parser.add_option("-p", "--platform", dest="platform", help="target platform (default linux/arm64)")
    options, _ = parser.parse_args(argv)

    os.environ[f"{ENV_PREFIX}CURRENT_STEP_NAME"] = "build"
    ev = {"current_step_name": "build"}
    environment_variable_to_dict(ev)

    if options.non_interactive:
        ev["control_non_interactive"] = True
    if options.dry_run:
        ev["control_dry_run"] = True
    if options.verbose:
        ev["control_verbose"] = True
    if options.platform:
        ev["build_platform"] = options.platform

    return build_and_push(ev)


if __name__ == "__main__":
    sys.exit(main())
