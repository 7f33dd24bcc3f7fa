"""
Request patterns that exercise KV-cache aware routing and populate the
llm-d Grafana dashboards.

Every pattern sends its requests concurrently and waits for the whole batch,
then the suites pace themselves with fixed pauses between patterns.
"""

import random
import time

from llmd_cpu.benchmark.client import (
    BenchmarkStats,
    chat_completion,
    chat_payload,
    check_gateway,
    send_batch,
    user_message,
)
from llmd_cpu.benchmark.metrics import show_current_metrics
from llmd_cpu.functions import announce

SHARED_SYSTEM_PROMPT = "You are a helpful AI assistant. Please help me understand"

SHARED_QUESTIONS = [
    "what is machine learning?",
    "how neural networks work?",
    "the difference between AI and ML?",
    "what is deep learning?",
    "how transformers work?",
]

UNIQUE_TOPICS = [
    "quantum physics",
    "ancient history",
    "modern art",
    "space exploration",
    "marine biology",
]

KV_LONG_CONTEXT = (
    "This is a long context that will consume more KV cache space. "
    "We are testing how the system handles longer prompts and whether the KV cache "
    "can efficiently store and retrieve longer sequences. "
    "This helps us understand the performance characteristics of the inference system. "
    "Additional context: The model should be able to handle this efficiently. "
)

MEDIUM_CONTEXT = "Tell me about the following topic in detail: machine learning, neural networks, and deep learning."

ALTERNATIVE_LONG_CONTEXT = (
    "Context: AI and ML are transforming technology. Deep learning uses neural networks with multiple layers. "
    "These systems learn from data through backpropagation and gradient descent. "
    "Common architectures include CNNs, RNNs, and Transformers. "
    "Question: Summarize the key concepts mentioned above."
)

QUICK_LONG_CONTEXT = (
    "Context: This is a detailed explanation that includes multiple concepts. "
    "We are testing how the system handles longer prompts and KV cache utilization. "
    "This helps measure performance with various input lengths. "
)

PATTERN_A = "Pattern A: Tell me about machine learning in"
PATTERN_B = "Pattern B: Explain the concept of artificial intelligence in"


def banner(title: str):
    announce("=====================================================")
    announce(title)
    announce("=====================================================")


# ----------------------------- KV cache suite -----------------------------

def shared_prefixes(ev: dict, stats: BenchmarkStats, count: int):
    announce(f"Test 1: Sending {count} requests with SHARED prefixes (testing KV cache hits)...")
    payloads = []
    for _ in range(count):
        messages = [
            {"role": "system", "content": SHARED_SYSTEM_PROMPT},
            {"role": "user", "content": random.choice(SHARED_QUESTIONS)},
        ]
        payloads.append(chat_payload(ev, messages, ev["benchmark_max_tokens"], ev["benchmark_temperature"]))
    stats.record(send_batch(ev, payloads, stagger=0.1))
    announce(f"✅ Test 1 completed: {count} requests with shared prefixes sent")


def unique_prefixes(ev: dict, stats: BenchmarkStats, count: int):
    announce(f"Test 2: Sending {count} requests with UNIQUE prefixes (testing cache misses)...")
    payloads = []
    for i in range(1, count + 1):
        prompt = f"Request #{i}-{int(time.time())}-{random.randint(0, 32767)}: Tell me about {random.choice(UNIQUE_TOPICS)}"
        payloads.append(chat_payload(ev, user_message(prompt), ev["benchmark_max_tokens"], ev["benchmark_temperature"]))
    stats.record(send_batch(ev, payloads, stagger=0.1))
    announce(f"✅ Test 2 completed: {count} requests with unique prefixes sent")


def burst_load(ev: dict, stats: BenchmarkStats, burst_size: int):
    announce(f"Test 3: Sending BURST of {burst_size} concurrent requests (testing load balancing)...")
    payload = chat_payload(ev, user_message("Count from 1 to 10 and explain each number."), 150, 0.8)
    stats.record(send_batch(ev, [payload] * burst_size))
    announce(f"✅ Test 3 completed: Burst of {burst_size} requests sent")


def identical_requests(ev: dict, stats: BenchmarkStats, count: int):
    announce(f"Test 4: Sending {count} IDENTICAL requests (testing maximum cache hits)...")
    payload = chat_payload(ev, user_message("What is the capital of France?"), 50, 0.0)
    stats.record(send_batch(ev, [payload] * count, stagger=0.05))
    announce(f"✅ Test 4 completed: {count} identical requests sent")


def long_context(ev: dict, stats: BenchmarkStats, count: int):
    announce(f"Test 5: Sending {count} requests with LONG contexts (testing KV cache capacity)...")
    payloads = [
        chat_payload(ev, user_message(f"{KV_LONG_CONTEXT} Question {i}: Summarize this in one sentence."), 100, 0.7)
        for i in range(1, count + 1)
    ]
    stats.record(send_batch(ev, payloads, stagger=0.2))
    announce(f"✅ Test 5 completed: {count} long context requests sent")


def alternating_patterns(ev: dict, stats: BenchmarkStats, count: int):
    announce(f"Test 6: Sending {count} requests with ALTERNATING patterns (testing cache eviction)...")
    payloads = []
    for i in range(1, count + 1):
        if i % 2 == 0:
            prompt = f"{PATTERN_A} simple terms"
        else:
            prompt = f"{PATTERN_B} detail"
        payloads.append(chat_payload(ev, user_message(prompt), ev["benchmark_max_tokens"], 0.7))
    stats.record(send_batch(ev, payloads, stagger=0.1))
    announce(f"✅ Test 6 completed: {count} alternating pattern requests sent")


def run_kv_cache(ev: dict, duration: int = 60) -> int:
    banner("KV Cache Routing Metrics Benchmark")
    announce(f'Gateway URL: {ev["benchmark_gateway_url"]}')
    announce(f'Model: {ev["deploy_model"]}')
    announce(f"Duration: {duration}s")

    if not check_gateway(ev):
        return 1

    stats = BenchmarkStats()
    end_time = time.time() + duration
    iteration = 1
    while time.time() < end_time:
        announce(f"Iteration {iteration} ({int(end_time - time.time())}s remaining)...")

        for pattern, size, pause in [
            (shared_prefixes, 10, 2),
            (unique_prefixes, 8, 2),
            (burst_load, 15, 3),
            (identical_requests, 12, 2),
            (long_context, 6, 2),
            (alternating_patterns, 10, 3),
        ]:
            pattern(ev, stats, size)
            time.sleep(pause)

        announce(f"✅ Iteration {iteration} completed")
        iteration += 1

    banner("Benchmark completed!")
    announce(f"Total time: {duration}s")
    announce(f"Total iterations: {iteration - 1}")
    announce(f"Requests: {stats.summary()}")
    print_kv_cache_hints(ev)
    return 0


def print_kv_cache_hints(ev: dict):
    namespace = ev["deploy_namespace"]
    kcmd = ev["control_kcmd"]
    print("")
    print("View metrics in Grafana:")
    print("  http://localhost:3000/d/llm-d-performance/")
    print("")
    print("Check EPP routing decisions:")
    print(f'  {kcmd} logs -n {namespace} -l {ev["deploy_epp_selector"]} --tail=100')
    print("")
    print("Check vLLM metrics from pods:")
    print(f'  {kcmd} get pods -n {namespace} -l {ev["deploy_model_selector"]} -o name | \\')
    print(
        f'    xargs -I {{}} {kcmd} exec -n {namespace} {{}} -c {ev["vllm_container_name"]} -- '
        f'curl -s http://localhost:{ev["vllm_metrics_port"]}/metrics | grep -E \'vllm_cache|vllm_request\''
    )


# ------------------------- alternative metrics suite -------------------------

def baseline_latency(ev: dict, stats: BenchmarkStats, count: int = 10):
    announce(f"Test 1: Baseline Latency ({count} sequential requests)...")
    for i in range(1, count + 1):
        result = chat_completion(ev, user_message("Count from 1 to 5."), max_tokens=50)
        stats.record([result])
        announce(f"📊 Request {i} latency: {int(result.latency * 1000)}ms")
        time.sleep(0.5)
    announce("✅ Test 1 complete - Check TTFT histogram in Grafana")


def concurrent_load(ev: dict, stats: BenchmarkStats, concurrency: int = 15):
    announce(f"Test 2: Concurrent Load ({concurrency} parallel requests)...")
    payload = chat_payload(ev, user_message("Explain machine learning in 2 sentences."), 80)
    stats.record(send_batch(ev, [payload] * concurrency))
    announce("✅ Test 2 complete - Check queue depth and load balancing")


def burst_pattern(ev: dict, stats: BenchmarkStats, bursts: int = 3, burst_size: int = 20):
    announce(f"Test 3: Burst Pattern ({bursts} bursts of {burst_size} requests)...")
    payload = chat_payload(ev, user_message("What is AI?"), 40)
    for burst in range(1, bursts + 1):
        announce(f"📊 Sending burst {burst}...")
        stats.record(send_batch(ev, [payload] * burst_size))
        announce(f"📊 Burst {burst} completed")
        time.sleep(5)
    announce("✅ Test 3 complete - Check request queue depth spikes")


def sustained_throughput(ev: dict, stats: BenchmarkStats, duration: int = 30):
    announce(f"Test 4: Sustained Throughput ({duration}s of continuous requests)...")
    payload = chat_payload(ev, user_message("Write a haiku about technology."), 60)
    end_time = time.time() + duration
    request_count = 0
    while time.time() < end_time:
        stats.record(send_batch(ev, [payload] * 5))
        request_count += 5
        announce(f"📊 Sent {request_count} requests...")
        time.sleep(2)
    announce(f"✅ Test 4 complete - Sent {request_count} requests. Check tokens/sec in Grafana")


def variable_context(ev: dict, stats: BenchmarkStats):
    announce("Test 5: Variable Context Lengths (testing KV cache utilization)...")
    for label, content, max_tokens, pause in [
        ("Short", "Hi", 20, 2),
        ("Medium", MEDIUM_CONTEXT, 100, 2),
        ("Long", ALTERNATIVE_LONG_CONTEXT, 120, 0),
    ]:
        payload = chat_payload(ev, user_message(content), max_tokens)
        stats.record(send_batch(ev, [payload] * 10))
        announce(f"📊 {label} contexts sent (10 requests)")
        if pause:
            time.sleep(pause)
    announce("✅ Test 5 complete - Check KV cache utilization percentage")


def run_alternative_metrics(ev: dict, duration: int = 300) -> int:
    banner("Alternative Metrics Benchmark for ARM64")
    announce(f'Gateway URL: {ev["benchmark_gateway_url"]}')
    announce(f'Model: {ev["deploy_model"]}')
    announce(f"Duration: {duration}s")
    announce("WARNING: KV cache hit/miss metrics are NOT available on ARM64")
    announce("Focusing on: Latency, Throughput, Queue Depth, Load Balancing")

    if not check_gateway(ev):
        return 1

    show_current_metrics(ev)

    stats = BenchmarkStats()
    end_time = time.time() + duration
    iteration = 1
    while time.time() < end_time:
        announce(f"Iteration {iteration} ({int(end_time - time.time())}s remaining)")

        baseline_latency(ev, stats)
        time.sleep(5)
        concurrent_load(ev, stats, 15)
        time.sleep(5)
        burst_pattern(ev, stats)
        time.sleep(5)
        sustained_throughput(ev, stats, 30)
        time.sleep(5)
        variable_context(ev, stats)
        time.sleep(5)

        show_current_metrics(ev)

        announce(f"✅ Iteration {iteration} completed")
        iteration += 1

    banner("Benchmark Complete!")
    announce(f"Total time: {duration}s")
    announce(f"Total iterations: {iteration - 1}")
    announce(f"Requests: {stats.summary()}")
    print_alternative_hints(ev)
    return 0


def print_alternative_hints(ev: dict):
    namespace = ev["deploy_namespace"]
    kcmd = ev["control_kcmd"]
    print("")
    print("📊 View these metrics in Grafana:")
    print("   http://localhost:3000/d/llm-d-performance/")
    print("")
    print("Available Metrics (ARM64 compatible):")
    for metric in [
        "KV Cache Usage Percentage (utilization)",
        "Request Queue Depth (load balancing)",
        "Time to First Token (TTFT)",
        "End-to-End Request Latency",
        "Requests Per Second",
        "Tokens Per Second",
        "Active Requests",
    ]:
        print(f"  ✅ {metric}")
    print("")
    print("Unavailable Metrics (ARM64 limitation):")
    print("  ❌ Cache Hit Rate (prefix caching not supported)")
    print("  ❌ Cache Miss Rate (prefix caching not supported)")
    print("")
    print("Check EPP routing decisions:")
    print(f'  {kcmd} logs -n {namespace} -l {ev["deploy_epp_selector"]} --tail=100')
    print("")
    print("Check detailed vLLM metrics:")
    print(f'  {kcmd} get pods -n {namespace} -l {ev["deploy_model_selector"]} -o name | head -1 | \\')
    print(f'    xargs -I {{}} {kcmd} exec -n {namespace} {{}} -c {ev["vllm_container_name"]} -- \\')
    print(
        f'    curl -s http://localhost:{ev["vllm_metrics_port"]}/metrics | '
        f"grep -E 'vllm:(time_to_first_token|e2e_request|num_requests)'"
    )


# ------------------------------- quick suite -------------------------------

def send_in_batches(ev: dict, stats: BenchmarkStats, payloads: list, batch_size: int, pause: float):
    total = len(payloads)
    for start in range(0, total, batch_size):
        stats.record(send_batch(ev, payloads[start:start + batch_size]))
        announce(f"  ✓ Sent {min(start + batch_size, total)}/{total} requests...")
        time.sleep(pause)


def run_quick(ev: dict) -> int:
    announce("🚀 Starting 5-minute Quick Benchmark...")
    announce(f'Gateway: {ev["benchmark_gateway_url"]}')

    if not check_gateway(ev):
        return 1

    stats = BenchmarkStats()

    announce("📊 Test 1/4: Shared prefix requests (60 requests)...")
    payloads = [
        chat_payload(
            ev,
            [
                {"role": "system", "content": "You are a helpful assistant."},
                {"role": "user", "content": f"Explain topic {i} in one sentence."},
            ],
            50,
        )
        for i in range(1, 61)
    ]
    send_in_batches(ev, stats, payloads, 10, 2)
    announce("✅ Test 1 complete")
    time.sleep(5)

    announce("📊 Test 2/4: Identical requests (40 requests)...")
    payload = chat_payload(ev, user_message("What is 2+2?"), 20, 0.0)
    send_in_batches(ev, stats, [payload] * 40, 10, 1)
    announce("✅ Test 2 complete")
    time.sleep(5)

    announce("📊 Test 3/4: Burst load testing (50 requests)...")
    payload = chat_payload(ev, user_message("Count from 1 to 5."), 100)
    send_in_batches(ev, stats, [payload] * 50, 10, 3)
    announce("✅ Test 3 complete")
    time.sleep(5)

    announce("📊 Test 4/4: Long context requests (50 requests)...")
    payloads = [
        chat_payload(ev, user_message(f"{QUICK_LONG_CONTEXT} Question {i}: Summarize."), 80)
        for i in range(1, 51)
    ]
    send_in_batches(ev, stats, payloads, 10, 2)
    announce("✅ Test 4 complete")

    announce("🎉 Quick Benchmark Complete!")
    announce(f"Requests: {stats.summary()}")

    namespace = ev["deploy_namespace"]
    kcmd = ev["control_kcmd"]
    print("")
    print("📈 View metrics in Grafana:")
    print("   http://localhost:3000/d/llm-d-performance/llm-d-performance-dashboard")
    print("")
    print("🔍 Check vLLM metrics:")
    print(f'   {kcmd} get pods -n {namespace} -l {ev["deploy_model_selector"]} -o name | head -1 | \\')
    print(f'     xargs -I {{}} {kcmd} exec -n {namespace} {{}} -c {ev["vllm_container_name"]} -- \\')
    print(f"     curl -s http://localhost:{ev['vllm_metrics_port']}/metrics | grep -E 'cache|queue|request'")
    return 0
