import json
import os
import platform
import shutil
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Tuple, Union

import pykube
import yaml
from pykube.exceptions import ObjectDoesNotExist, PyKubeError
from pykube.query import Query

from kubernetes import client as k8s_client, config as k8s_config

import logging

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

DEFAULTS_FILE = Path(__file__).resolve().parent / "defaults.yaml"

ENV_PREFIX = "LLMDCPU_"

# variables understood by the original runbook, mapped to their "ev" keys
LEGACY_ENV_VARS = {
    "QUAY_USERNAME": "image_registry_username",
    "MINIKUBE_DRIVER": "cluster_driver",
    "ENABLE_GPU": "cluster_enable_gpu",
    "GATEWAY_URL": "benchmark_gateway_url",
}

IMAGE_KEYS = ["routing_sidecar", "epp", "vllm"]


def announce(msgcont: str, logfile: str = None, ignore_if_failed: bool = False):
    work_dir = os.getenv(f"{ENV_PREFIX}CONTROL_WORK_DIR", ".")
    log_dir = os.path.join(work_dir, "logs")

    os.makedirs(log_dir, exist_ok=True)

    if not logfile:
        cur_step = os.getenv(f"{ENV_PREFIX}CURRENT_STEP_NAME", "step")
        logfile = cur_step + ".log"

    logpath = os.path.join(log_dir, logfile)

    is_error = bool(msgcont.count("ERROR:"))
    if is_error:
        msgcont = f"❌ {msgcont.replace('ERROR: ', '')}"
        logger.error(msgcont)
    elif msgcont.count("WARNING:"):
        msgcont = f"⚠️  {msgcont.replace('WARNING: ', '')}"
        logger.warning(msgcont)
    else:
        logger.info(msgcont)

    try:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with open(logpath, "a", encoding="utf-8") as f:
            f.write(f"{timestamp} : {msgcont}\n")
    except IOError as e:
        logger.error(f"Could not write to log file '{logpath}'. Reason: {e}")

    if is_error and not ignore_if_failed:
        sys.exit(1)


def llmdcpu_execute_cmd(
    actual_cmd: str,
    dry_run: bool = True,
    verbose: bool = False,
    silent: bool = True,
    attempts: int = 1,
    fatal: bool = False,
    delay: int = 10,
) -> int:
    work_dir_str = os.getenv(f"{ENV_PREFIX}CONTROL_WORK_DIR", ".")
    log_dir = Path(work_dir_str) / "setup" / "commands"

    log_dir.mkdir(parents=True, exist_ok=True)

    command_tstamp = int(time.time() * 1_000_000_000)

    if dry_run:
        msg = f'---> would have executed the command "{actual_cmd}"'
        announce(msg)
        try:
            (log_dir / f"{command_tstamp}_command.log").write_text(msg + "\n")
        except IOError as e:
            announce(f"WARNING: unable to write to dry run log: {e}")
        return 0

    msg = f'---> will execute the command "{actual_cmd}"'
    if verbose:
        try:
            (log_dir / f"{command_tstamp}_command.log").write_text(msg + "\n")
        except IOError as e:
            announce(f"WARNING: unable to write to command log: {e}")

    ecode = -1
    last_stdout_log = None
    last_stderr_log = None

    for counter in range(1, attempts + 1):
        command_tstamp = int(time.time() * 1_000_000_000)

        stdout_log = log_dir / f"{command_tstamp}_stdout.log"
        stderr_log = log_dir / f"{command_tstamp}_stderr.log"

        try:
            if not verbose and silent:
                last_stdout_log = stdout_log
                last_stderr_log = stderr_log
                with open(stdout_log, "w") as f_out, open(stderr_log, "w") as f_err:
                    result = subprocess.run(
                        actual_cmd,
                        shell=True,
                        executable="/bin/bash",
                        stdout=f_out,
                        stderr=f_err,
                        check=False,
                    )
            else:
                if verbose:
                    announce(msg)
                result = subprocess.run(
                    actual_cmd, shell=True, executable="/bin/bash", check=False
                )

            ecode = result.returncode

        except OSError as e:
            announce(f"An unexpected error occurred while running the command: {e}")
            ecode = -1

        if ecode == 0:
            break

        if counter < attempts:
            announce(
                f"Command failed with exit code {ecode}. Retrying in {delay} seconds... ({counter}/{attempts})"
            )
            time.sleep(delay)

    if ecode != 0:
        if not silent:
            announce(f'WARNING: error while executing command "{actual_cmd}"')

        for captured, label in [(last_stdout_log, "stdout"), (last_stderr_log, "stderr")]:
            if captured and captured.exists():
                try:
                    contents = captured.read_text().strip()
                    if contents:
                        announce(contents)
                except IOError:
                    announce(f"({label} not captured)")

    if fatal and ecode != 0:
        announce(f"ERROR: Exiting with code {ecode}.")

    return ecode


def capture_cmd(actual_cmd: str, timeout: int = 120) -> Tuple[int, str]:
    """
    Run a read-only command and return its exit code and stdout.

    Used for probing CLI state (profile lists, machine lists, logins), so it
    also runs during dry runs. A missing binary or a timeout yields (-1, "").
    """
    try:
        result = subprocess.run(
            actual_cmd,
            shell=True,
            executable="/bin/bash",
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"command \"{actual_cmd}\" did not complete: {e}")
        return -1, ""

    return result.returncode, result.stdout


def capture_json(actual_cmd: str, default=None):
    """Run a command whose stdout is JSON, returning `default` if it can't be parsed."""
    _, stdout = capture_cmd(actual_cmd)
    try:
        return json.loads(stdout)
    except ValueError:
        return default


def load_defaults(path: Path = DEFAULTS_FILE) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def environment_variable_to_dict(ev: dict = None) -> dict:
    if ev is None:
        ev = {}

    for key, value in load_defaults().items():
        ev.setdefault(key, value)

    for legacy_key, key in LEGACY_ENV_VARS.items():
        if legacy_key in os.environ:
            ev[key] = os.environ[legacy_key]

    for key in dict(os.environ).keys():
        if key.startswith(ENV_PREFIX):
            ev.update({key[len(ENV_PREFIX):].lower(): os.environ.get(key)})

    # Convert true/false to boolean values
    for key, value in ev.items():
        if isinstance(value, str):
            lowered = value.lower()
            if lowered == "true":
                ev[key] = True
            if lowered == "false":
                ev[key] = False

    for mandatory_boolean_key in [
        "control_dry_run",
        "control_verbose",
        "control_non_interactive",
        "cluster_enable_gpu",
    ]:
        if mandatory_boolean_key not in ev:
            ev[mandatory_boolean_key] = 0

        ev[mandatory_boolean_key] = bool(int(ev[mandatory_boolean_key]))

    for mandatory_integer_key in [
        "control_wait_timeout",
        "control_wait_period",
        "cluster_memory",
        "cluster_cpus",
        "podman_machine_cpus",
        "podman_machine_memory",
        "podman_machine_disk",
        "podman_machine_min_cpus",
        "podman_build_machine_cpus",
        "podman_build_machine_memory",
        "podman_build_machine_disk",
        "build_vllm_max_jobs",
        "deploy_decode_replicas",
        "deploy_max_model_len",
        "deploy_kvcache_space_gib",
        "deploy_epp_wait_timeout",
        "deploy_gateway_wait_timeout",
        "deploy_model_wait_timeout",
        "deploy_istiod_wait_timeout",
        "deploy_local_port",
        "vllm_metrics_port",
        "benchmark_request_timeout",
        "benchmark_max_tokens",
    ]:
        if mandatory_integer_key not in ev:
            ev[mandatory_integer_key] = 0
        ev[mandatory_integer_key] = int(ev[mandatory_integer_key])

    ev["benchmark_temperature"] = float(ev.get("benchmark_temperature", 0.7))
    ev["benchmark_gateway_url"] = str(ev["benchmark_gateway_url"]).rstrip("/")
    ev["cluster_provider"] = str(ev["cluster_provider"]).lower()
    ev["cluster_driver"] = str(ev["cluster_driver"]).lower()
    ev["current_step_name"] = ev.get("current_step_name", "step")

    derive_names(ev)

    # announce() and llmdcpu_execute_cmd() locate the work dir through the environment
    os.environ.setdefault(f"{ENV_PREFIX}CONTROL_WORK_DIR", str(ev["control_work_dir"]))

    return ev


def derive_names(ev: dict) -> dict:
    """Fill in the names built from release names and the cluster profile."""
    ev["deploy_gateway_name"] = f'{ev["deploy_release_infra"]}-inference-gateway'
    ev["deploy_gateway_service"] = f'{ev["deploy_gateway_name"]}-istio'
    ev["deploy_epp_selector"] = f'inferencepool={ev["deploy_release_gaie"]}-epp'
    ev["deploy_gateway_selector"] = "app.kubernetes.io/component=inference-gateway"
    ev["deploy_model_selector"] = "llm-d.ai/inferenceServing=true"

    if not ev.get("benchmark_gateway_url"):
        ev["benchmark_gateway_url"] = f'http://localhost:{ev["deploy_local_port"]}'

    if ev["cluster_provider"] == "kind":
        ev["cluster_context"] = f'kind-{ev["cluster_profile"]}'
    else:
        ev["cluster_context"] = ev["cluster_profile"]

    for image_key in IMAGE_KEYS:
        ev[f"image_{image_key}_local"] = get_image(ev, image_key, remote=False)
        ev[f"image_{image_key}_remote"] = get_image(ev, image_key, remote=True)

    return ev


def get_image(ev: dict, image_key: str, remote: bool = True, tag_only: bool = False) -> str:
    """
    Construct container image reference.

    Args:
        ev: dictionary containing all parameters
        image_key: image identifier ("routing_sidecar", "epp" or "vllm")
        remote: If "True", reference the image on the remote registry, otherwise
                the local build tag
        tag_only: If "True", return only the tag

    Returns:
        Full image reference or just tag
    """
    image_name = ev[f"image_{image_key}_name"]
    image_tag = ev[f"image_{image_key}_tag"]

    if tag_only:
        return image_tag

    if remote:
        return f'{ev["image_registry"]}/{ev["image_registry_username"]}/{image_name}:{image_tag}'
    return f'{ev["image_local_registry"]}/{image_name}:{image_tag}'


def check_command(command: str) -> bool:
    return shutil.which(command) is not None


def is_darwin() -> bool:
    return sys.platform == "darwin"


def is_linux() -> bool:
    return sys.platform.startswith("linux")


def host_arch() -> str:
    return platform.machine()


def resolve_driver(requested: str) -> str:
    """Return the container runtime to use, "" when "auto" finds neither podman nor docker."""
    if requested != "auto":
        return requested

    for candidate in ["podman", "docker"]:
        if check_command(candidate):
            return candidate

    return ""


def prompt_yes_no(question: str, ev: dict, default: bool = False) -> bool:
    if ev["control_non_interactive"]:
        return default

    try:
        reply = input(f"{question} [y/N] ")
    except EOFError:
        return default

    return reply.strip().lower().startswith("y")


def kube_connect(context: str = None, config_path: str = "~/.kube/config", ignore_if_failed: bool = False):
    api = None
    try:
        kube_config = pykube.KubeConfig.from_file(os.path.expanduser(config_path))
        if context:
            kube_config.set_current_context(context)
        api = pykube.HTTPClient(kube_config, timeout=120)
        k8s_config.load_kube_config(os.path.expanduser(config_path), context=context)
    except (FileNotFoundError, PyKubeError):
        announce("ERROR: Kubeconfig file not found. Ensure the local cluster is running.", ignore_if_failed=ignore_if_failed)
    except (KeyError, k8s_config.ConfigException):
        api = None
        announce(f"ERROR: Context \"{context}\" not found in {config_path}", ignore_if_failed=ignore_if_failed)

    return api, k8s_client


def cluster_api(ev: dict, ignore_if_failed: bool = False):
    """pykube client for the local cluster, None during dry runs."""
    if ev["control_dry_run"]:
        return None
    api, _ = kube_connect(ev["cluster_context"], ignore_if_failed=ignore_if_failed)
    return api


def kubectl_apply(
    api: pykube.HTTPClient,
    manifest_data: Union[list, dict, str],
    dry_run: bool = False,
):
    if isinstance(manifest_data, str):
        manifest_data = yaml.safe_load(manifest_data)

    if not isinstance(manifest_data, list):
        manifest_items = [manifest_data]
    else:
        manifest_items = manifest_data

    object_kind = "N/A"
    object_name = "N/A"
    for item in manifest_items:
        try:
            object_api = item["apiVersion"]
            object_kind = item["kind"]
            object_name = item["metadata"]["name"]
            object_namespace = item["metadata"].get("namespace", "")

            if dry_run:
                announce(f"[DRY RUN] Would have created/updated {object_kind} \"{object_name}\".")
                continue

            _pci = pykube.object_factory(api, object_api, object_kind)
            obj_instance = _pci(api, item)

            if obj_instance.exists():
                if object_namespace:
                    obj_instance = _pci.objects(api).filter(namespace=object_namespace).get_by_name(object_name)
                else:
                    obj_instance = _pci.objects(api).get_by_name(object_name)
                obj_instance.obj.update({k: v for k, v in item.items() if k != "metadata"})
                obj_instance.update()
                announce(f"🚀 Updated {object_kind} \"{object_name}\"")

            else:
                obj_instance.create()
                announce(f"🚀 Created {object_kind} \"{object_name}\"")

        except PyKubeError as e:
            announce(f"ERROR: Failed to create or update {object_kind} \"{object_name}\": {e}")


def kubectl_get(
    api: pykube.HTTPClient,
    object_api: str = '',
    object_kind: str = '',
    object_name: str = '',
    object_namespace: str = '',
    object_selector: Union[dict, str] = None,
    dry_run: bool = False,
):
    if dry_run:
        announce(f"[DRY RUN] Would have returned {object_kind}/{object_name}")
        return [], []

    if object_api:
        _pci = pykube.object_factory(api, object_api, object_kind)
    else:
        _pci = getattr(pykube, object_kind)

    object_instances = []
    object_names = []

    try:
        if object_name:
            if object_namespace:
                object_instances = _pci.objects(api).filter(namespace=object_namespace).get_by_name(object_name)
            else:
                object_instances = _pci.objects(api).get_by_name(object_name)
        elif object_selector:
            if object_namespace:
                object_instances = _pci.objects(api).filter(namespace=object_namespace, selector=object_selector)
            else:
                object_instances = _pci.objects(api).filter(selector=object_selector)
        else:
            if object_namespace:
                object_instances = _pci.objects(api).filter(namespace=object_namespace).all()
            else:
                object_instances = _pci.objects(api).all()
    except ObjectDoesNotExist:
        return [], []

    if isinstance(object_instances, Query):
        object_instances = list(object_instances)
        object_names = [i.name for i in object_instances]
    else:
        object_names = [object_instances.name]
        object_instances = [object_instances]

    return object_instances, object_names


def kubectl_delete(
    api: pykube.HTTPClient,
    object_api: str = '',
    object_kind: str = '',
    object_name: str = '',
    object_namespace: str = '',
    object_selector: Union[dict, str] = None,
    dry_run: bool = False,
) -> bool:
    if dry_run:
        announce(f"[DRY RUN] Would have deleted {object_kind}/{object_name} on namespace {object_namespace}")
        return True

    if object_api:
        _pci = pykube.object_factory(api, object_api, object_kind)
    else:
        _pci = getattr(pykube, object_kind)

    try:
        if object_namespace:
            if object_selector:
                object_instances = _pci.objects(api).filter(namespace=object_namespace, selector=object_selector)
            else:
                object_instances = _pci.objects(api).filter(namespace=object_namespace).get_by_name(object_name)
        else:
            if object_selector:
                object_instances = _pci.objects(api).filter(selector=object_selector)
            else:
                object_instances = _pci.objects(api).get_by_name(object_name)

        if isinstance(object_instances, Query):
            for i in object_instances:
                i.delete()
        else:
            object_instances.delete()

    except ObjectDoesNotExist:
        return True

    return True


def namespace_exists(api: pykube.HTTPClient, namespace: str) -> bool:
    if api is None:
        return False
    try:
        _, names = kubectl_get(api=api, object_kind="Namespace", object_name=namespace)
    except PyKubeError:
        return False
    return namespace in names


def count_ready_pods(api: pykube.HTTPClient, namespace: str, selector: str) -> int:
    """Number of pods matching `selector` whose Ready condition is True."""
    try:
        pods, _ = kubectl_get(api=api, object_kind="Pod", object_namespace=namespace, object_selector=selector)
    except PyKubeError:
        return 0

    ready = 0
    for pod in pods:
        conditions = pod.obj.get("status", {}).get("conditions") or []
        if any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions):
            ready += 1
    return ready


def wait_for_pods(
    api: pykube.HTTPClient,
    ev: dict,
    namespace: str,
    selector: str,
    expected: int,
    timeout: int = 600,
) -> int:
    """
    Poll until exactly `expected` pods matching `selector` are Ready.

    Returns:
        int: 0 when the pods are ready, 1 on timeout
    """
    announce(
        f'⏳ Waiting for {expected} pod(s) with label "{selector}" in namespace "{namespace}" (timeout: {timeout}s)...'
    )

    if ev["control_dry_run"]:
        announce(f"[DRY RUN] Would have waited for {expected} \"{selector}\" pod(s)")
        return 0

    period = ev["control_wait_period"]
    elapsed = 0
    while elapsed < timeout:
        ready_count = count_ready_pods(api, namespace, selector)
        if ready_count == expected:
            announce(f"✅ All {expected} pod(s) are ready")
            return 0

        time.sleep(period)
        elapsed += period

    announce(f"ERROR: Timeout waiting for \"{selector}\" pods to be ready", ignore_if_failed=True)
    try:
        pods, _ = kubectl_get(api=api, object_kind="Pod", object_namespace=namespace, object_selector=selector)
        for pod in pods:
            announce(f"    {pod.name}: {pod.obj.get('status', {}).get('phase', 'Unknown')}")
    except PyKubeError as e:
        announce(f"WARNING: unable to list \"{selector}\" pods: {e}")
    return 1


def podman_machines() -> list:
    machines = capture_json("podman machine list --format json", default=[])
    if not isinstance(machines, list):
        return []
    return machines


def ensure_podman_machine(
    ev: dict,
    cpus: int,
    memory_mb: int,
    disk_gb: int,
    min_cpus: int = 0,
    require_rootful: bool = False,
    check_cgroups: bool = False,
) -> int:
    """
    Make sure a podman machine exists and is running (macOS only).

    Returns:
        int: 0 for success, non-zero for failure
    """
    if not is_darwin():
        return 0

    dry_run = ev["control_dry_run"]
    verbose = ev["control_verbose"]

    announce("🔍 Checking Podman machine status...")

    machines = podman_machines()
    if not machines:
        announce(f"ℹ️ No Podman machine found, creating one ({cpus} CPUs, {memory_mb}MB RAM, rootful mode)...")
        init_cmd = f"podman machine init --cpus {cpus} --memory {memory_mb} --disk-size {disk_gb} --rootful"
        ecode = llmdcpu_execute_cmd(init_cmd, dry_run=dry_run, verbose=verbose, silent=False)
        if ecode != 0:
            announce("ERROR: Failed to initialize Podman machine", ignore_if_failed=True)
            announce("WARNING: Try with fewer resources: podman machine init --cpus 8 --memory 26624 --rootful")
            return ecode
        announce("✅ Podman machine initialized (rootful mode)")
    elif min_cpus:
        existing_cpus = int(machines[0].get("CPUs", 0) or 0)
        if existing_cpus < min_cpus:
            announce(f"WARNING: Existing Podman machine has only {existing_cpus} CPUs (need {min_cpus}+)")
            announce(
                f"WARNING: Consider removing and recreating: podman machine rm -f && podman machine init --cpus {cpus} --memory {memory_mb}"
            )
            announce("ℹ️ Continuing anyway - the cluster may fail to start...")

    if not any(m.get("Running") for m in podman_machines()):
        announce("🚀 Starting Podman machine...")
        ecode = llmdcpu_execute_cmd("podman machine start", dry_run=dry_run, verbose=verbose, silent=False)
        if ecode != 0:
            announce("ERROR: Failed to start Podman machine", ignore_if_failed=True)
            return ecode
        announce("✅ Podman machine started")
        if not dry_run:
            time.sleep(5)
    else:
        announce("✅ Podman machine is already running")

    if require_rootful:
        inspected = capture_json("podman machine inspect", default=[])
        rootful = bool(inspected and inspected[0].get("Rootful"))
        if not rootful:
            announce("WARNING: Podman machine is not in rootful mode")
            announce("ℹ️ Switching to rootful mode...")
            for cmd in ["podman machine stop", "podman machine set --rootful", "podman machine start"]:
                ecode = llmdcpu_execute_cmd(cmd, dry_run=dry_run, verbose=verbose, silent=False)
                if ecode != 0:
                    announce(f"ERROR: Failed while running \"{cmd}\" (exit code: {ecode})", ignore_if_failed=True)
                    return ecode
            announce("✅ Podman machine now in rootful mode")

    if check_cgroups:
        announce("🔍 Verifying cgroup v2 controllers...")
        _, controllers = capture_cmd('podman machine ssh -- "cat /sys/fs/cgroup/cgroup.controllers"')
        if "cpuset" in controllers.split():
            announce("✅ cgroup v2 with cpuset controller confirmed")
        else:
            announce("WARNING: cpuset controller not found in cgroup v2")
            announce("WARNING: Kubernetes may have issues - consider using Docker Desktop")

    return 0


def remove_minikube_volumes(ev: dict) -> int:
    """Remove podman volumes left behind by the minikube profile."""
    profile = ev["cluster_profile"]
    _, stdout = capture_cmd(f"podman volume ls -q --filter label=name.minikube.sigs.k8s.io={profile}")
    for volume in stdout.split():
        announce(f"🧹 Removing podman volume: {volume}")
        llmdcpu_execute_cmd(
            f"podman volume rm -f {volume}",
            dry_run=ev["control_dry_run"],
            verbose=ev["control_verbose"],
        )
    return 0


def kill_port_forward(ev: dict, pattern: str):
    # "[k]ubectl" never matches the wrapping shell. pkill exits 1 when nothing matched
    kcmd = ev["control_kcmd"]
    llmdcpu_execute_cmd(
        f'pkill -f "[{kcmd[0]}]{kcmd[1:]} port-forward.*{pattern}" || true',
        dry_run=ev["control_dry_run"],
        verbose=ev["control_verbose"],
    )
