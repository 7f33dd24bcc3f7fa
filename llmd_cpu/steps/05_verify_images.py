#!/usr/bin/env python3

import os
import sys

from llmd_cpu.functions import (
    IMAGE_KEYS,
    announce,
    capture_cmd,
    environment_variable_to_dict,
    resolve_driver,
)


def image_pull_command(ev: dict) -> str:
    driver = resolve_driver(ev["cluster_driver"])
    if driver in ["podman", "docker"]:
        return driver
    return ev["control_ccmd"]


def image_is_accessible(ccmd: str, image: str) -> bool:
    ecode, _ = capture_cmd(f"{ccmd} manifest inspect {image}")
    return ecode == 0


def verify_images(ev: dict) -> int:
    """
    Check that the remote images can be inspected.

    Inaccessible images only produce warnings: the cluster pulls the images
    itself during deployment, and private images may still be pullable
    through imagePullSecrets.
    """
    announce("🔍 Verifying Quay images are accessible...")
    announce(f'ℹ️ Using Quay username: {ev["image_registry_username"]}')

    ccmd = image_pull_command(ev)
    inaccessible = []
    for image_key in IMAGE_KEYS:
        image = ev[f"image_{image_key}_remote"]
        announce(f"🔍 Verifying {image}...")
        if ev["control_dry_run"]:
            announce(f'---> would have executed the command "{ccmd} manifest inspect {image}"')
            continue

        if image_is_accessible(ccmd, image):
            announce(f"✅ Verified: {image}")
            continue

        inaccessible.append(image)
        announce(f"WARNING: Cannot access {image}")
        announce("WARNING: This could mean:")
        announce("WARNING:   1. Images haven't been pushed to Quay yet")
        announce(f"WARNING:   2. Images are private and you need to login: {ccmd} login {ev['image_registry']}")
        announce("WARNING:   3. Images need to be made public in Quay.io settings")
        announce("WARNING: To build and push images, run: llmd-cpu-build")
        announce("ℹ️ Continuing anyway - the cluster will attempt to pull during deployment...")

    announce(f"ℹ️ Note: the cluster will pull images from {ev['image_registry']} during deployment")
    if inaccessible:
        announce("ℹ️ If images are private, you may need to configure imagePullSecrets")
    return 0


def main(ev: dict = None) -> int:
    if ev is None:
        ev = {'current_step_name': os.path.splitext(os.path.basename(__file__))[0]}
        environment_variable_to_dict(ev)

    return verify_images(ev)


if __name__ == "__main__":
    sys.exit(main())
