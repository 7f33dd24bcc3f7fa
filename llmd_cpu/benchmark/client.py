"""HTTP client for the gateway's OpenAI-compatible API."""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from llmd_cpu.functions import announce


@dataclass
class RequestResult:
    ok: bool
    status_code: int
    latency: float
    content: Optional[str] = None
    error: Optional[str] = None


def chat_payload(ev: dict, messages: list, max_tokens: int, temperature: float = None) -> dict:
    payload = {
        "model": ev["deploy_model"],
        "messages": messages,
        "max_tokens": max_tokens,
    }
    if temperature is not None:
        payload["temperature"] = temperature
    return payload


def user_message(content: str) -> list:
    return [{"role": "user", "content": content}]


def post_chat(ev: dict, payload: dict) -> RequestResult:
    url = f'{ev["benchmark_gateway_url"]}/v1/chat/completions'
    start = time.monotonic()
    try:
        response = requests.post(url, json=payload, timeout=ev["benchmark_request_timeout"])
    except requests.RequestException as e:
        return RequestResult(ok=False, status_code=0, latency=time.monotonic() - start, error=str(e))

    latency = time.monotonic() - start
    if response.status_code != 200:
        return RequestResult(
            ok=False,
            status_code=response.status_code,
            latency=latency,
            error=response.text[:200],
        )

    try:
        content = response.json()["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        return RequestResult(ok=False, status_code=response.status_code, latency=latency, error=f"malformed response: {e}")

    return RequestResult(ok=True, status_code=response.status_code, latency=latency, content=content)


def chat_completion(ev: dict, messages: list, max_tokens: int, temperature: float = None) -> RequestResult:
    return post_chat(ev, chat_payload(ev, messages, max_tokens, temperature))


def list_models(ev: dict, timeout: int = 5) -> List[str]:
    """Model ids served behind the gateway. Raises requests.RequestException when unreachable."""
    response = requests.get(f'{ev["benchmark_gateway_url"]}/v1/models', timeout=timeout)
    response.raise_for_status()
    return [model["id"] for model in response.json().get("data", [])]


def check_gateway(ev: dict) -> bool:
    try:
        requests.get(f'{ev["benchmark_gateway_url"]}/v1/models', timeout=5)
    except requests.RequestException:
        announce(f'WARNING: Cannot reach gateway at {ev["benchmark_gateway_url"]}')
        announce("WARNING: Make sure port-forward is running:")
        announce(
            f'WARNING:   {ev["control_kcmd"]} port-forward -n {ev["deploy_namespace"]} '
            f'svc/{ev["deploy_gateway_service"]} {ev["deploy_local_port"]}:80'
        )
        return False

    announce("✅ Gateway is accessible")
    return True


def send_batch(ev: dict, payloads: list, stagger: float = 0.0) -> List[RequestResult]:
    """
    Fire all payloads concurrently and wait until every request has completed.

    With a non-zero stagger, submission pauses `stagger` seconds between
    requests, while requests already in flight keep running.
    """
    if not payloads:
        return []

    with ThreadPoolExecutor(max_workers=len(payloads)) as executor:
        futures = []
        for payload in payloads:
            futures.append(executor.submit(post_chat, ev, payload))
            if stagger:
                time.sleep(stagger)
        return [f.result() for f in futures]


def percentile(values: list, pct: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(len(ordered) - 1, max(0, int(round(pct / 100.0 * (len(ordered) - 1)))))
    return ordered[index]


@dataclass
class BenchmarkStats:
    """Running tally of the requests a benchmark sent."""

    succeeded: int = 0
    failed: int = 0
    latencies: List[float] = field(default_factory=list)
    errors: dict = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    def record(self, results: List[RequestResult]):
        for result in results:
            if result.ok:
                self.succeeded += 1
                self.latencies.append(result.latency)
            else:
                self.failed += 1
                key = result.status_code or "connection"
                self.errors[key] = self.errors.get(key, 0) + 1

    def summary(self) -> dict:
        mean = sum(self.latencies) / len(self.latencies) if self.latencies else 0.0
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "mean_latency_ms": round(mean * 1000, 1),
            "p50_latency_ms": round(percentile(self.latencies, 50) * 1000, 1),
            "p95_latency_ms": round(percentile(self.latencies, 95) * 1000, 1),
            "errors": dict(self.errors),
        }
