"""Scrape and filter the vLLM Prometheus metrics."""

from typing import Iterable, List, Tuple

import pykube
import requests
from kubernetes import client as k8s_client, stream as k8s_stream
from prometheus_client.parser import text_string_to_metric_families
from prometheus_client.samples import Sample
from pykube.exceptions import PyKubeError

from llmd_cpu.functions import announce, kube_connect, kubectl_get

# metrics that are meaningful on ARM64 CPUs, where prefix caching is unavailable
ALTERNATIVE_METRICS = [
    "vllm:kv_cache_usage_perc",
    "vllm:num_requests",
    "vllm:request_success",
    "vllm:prompt_tokens",
    "vllm:generation_tokens",
]


def filter_samples(text: str, prefixes: Iterable[str]) -> List[Sample]:
    prefixes = tuple(prefixes)
    samples = []
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if sample.name.endswith("_created"):
                continue
            if sample.name.startswith(prefixes):
                samples.append(sample)
    return samples


def format_sample(sample: Sample) -> str:
    labels = ",".join(f'{k}="{v}"' for k, v in sorted(sample.labels.items()))
    if labels:
        return f"{sample.name}{{{labels}}} {sample.value}"
    return f"{sample.name} {sample.value}"


def first_serving_pod(api: pykube.HTTPClient, ev: dict) -> str:
    try:
        _, names = kubectl_get(
            api=api,
            object_kind="Pod",
            object_namespace=ev["deploy_namespace"],
            object_selector=ev["deploy_model_selector"],
        )
    except PyKubeError as e:
        announce(f"WARNING: Unable to list vLLM pods: {e}")
        return ""
    return sorted(names)[0] if names else ""


def fetch_metrics_from_pod(ev: dict, pod_name: str) -> str:
    core_v1 = k8s_client.CoreV1Api()
    return k8s_stream.stream(
        core_v1.connect_get_namespaced_pod_exec,
        pod_name,
        ev["deploy_namespace"],
        container=ev["vllm_container_name"],
        command=["curl", "-s", f'http://localhost:{ev["vllm_metrics_port"]}/metrics'],
        stderr=True,
        stdin=False,
        stdout=True,
        tty=False,
    )


def fetch_metrics(ev: dict, api: pykube.HTTPClient = None) -> Tuple[str, str]:
    """
    Return (source, metrics text).

    A configured benchmark_metrics_url is scraped directly, otherwise the
    metrics are read from inside the first serving pod.
    """
    if ev["benchmark_metrics_url"]:
        response = requests.get(ev["benchmark_metrics_url"], timeout=10)
        response.raise_for_status()
        return ev["benchmark_metrics_url"], response.text

    if api is None:
        api, _ = kube_connect(ev["cluster_context"], ignore_if_failed=True)
        if api is None:
            return "", ""

    pod_name = first_serving_pod(api, ev)
    if not pod_name:
        return "", ""
    return f"pod/{pod_name}", fetch_metrics_from_pod(ev, pod_name)


def show_current_metrics(ev: dict, prefixes: Iterable[str] = ALTERNATIVE_METRICS, api: pykube.HTTPClient = None) -> int:
    announce("🔍 Fetching current metrics from vLLM pods...")

    try:
        source, text = fetch_metrics(ev, api)
    except (requests.RequestException, k8s_client.ApiException) as e:
        announce(f"WARNING: Unable to fetch metrics: {e}")
        return 0

    if not source:
        announce("WARNING: No vLLM pods found!")
        return 0

    try:
        samples = filter_samples(text, prefixes)
    except ValueError as e:
        announce(f"WARNING: Unable to parse metrics from {source}: {e}")
        return 0

    announce(f"📊 Current Metrics from {source}:")
    print("---------------------------------------------------")
    for sample in samples:
        print(f"  {format_sample(sample)}")
    print("---------------------------------------------------")
    return len(samples)
