#!/usr/bin/env python3

import os
import sys
from optparse import OptionParser

from llmd_cpu.benchmark.suites import run_alternative_metrics, run_kv_cache, run_quick
from llmd_cpu.functions import announce, derive_names, environment_variable_to_dict

SUITES = {
    "kv-cache": (run_kv_cache, 60),
    "alternative-metrics": (run_alternative_metrics, 300),
    "quick": (run_quick, None),
}


def parse_args(argv: list = None):
    parser = OptionParser(
        usage="%prog [options] {" + ",".join(SUITES) + "} [duration_seconds]",
        description="Generate load against the CPU inference gateway.",
    )
    parser.add_option("-g", "--gateway-url", dest="gateway_url", help="gateway base URL (default http://localhost:<deploy_local_port>)")
    parser.add_option("-m", "--model", dest="model", help="model name sent with each request")
    parser.add_option("-n", "--namespace", dest="namespace", help="namespace of the deployment")
    parser.add_option("--metrics-url", dest="metrics_url", help="scrape vLLM metrics from this URL instead of a pod")
    parser.add_option(
        "--cluster-provider", dest="cluster_provider", type="choice", choices=["minikube", "kind"],
        help="provider of the local cluster, selects the kube context used to read pod metrics",
    )
    parser.add_option("--context", dest="context", help="kube context to read pod metrics from")
    parser.add_option("-v", "--verbose", action="store_true", dest="verbose", default=False)

    options, args = parser.parse_args(argv)

    if not args or args[0] not in SUITES:
        parser.error(f"a benchmark suite is required, one of: {', '.join(SUITES)}")
    if len(args) > 2:
        parser.error("too many arguments")

    duration = None
    if len(args) == 2:
        try:
            duration = int(args[1])
        except ValueError:
            parser.error(f'duration must be a number of seconds, got "{args[1]}"')
        if duration < 0:
            parser.error("duration must not be negative")

    return options, args[0], duration


def main(argv: list = None) -> int:
    options, suite, duration = parse_args(argv)

    os.environ["LLMDCPU_CURRENT_STEP_NAME"] = f"benchmark_{suite.replace('-', '_')}"

    ev = {"current_step_name": f"benchmark_{suite}"}
    environment_variable_to_dict(ev)

    if options.gateway_url:
        ev["benchmark_gateway_url"] = options.gateway_url.rstrip("/")
    if options.model:
        ev["deploy_model"] = options.model
    if options.namespace:
        ev["deploy_namespace"] = options.namespace
    if options.metrics_url:
        ev["benchmark_metrics_url"] = options.metrics_url
    if options.cluster_provider:
        ev["cluster_provider"] = options.cluster_provider
    if options.verbose:
        ev["control_verbose"] = True
    derive_names(ev)
    if options.context:
        ev["cluster_context"] = options.context

    runner, default_duration = SUITES[suite]
    if default_duration is None:
        if duration is not None:
            announce("WARNING: the quick benchmark runs a fixed request set, ignoring duration")
        return runner(ev)

    return runner(ev, default_duration if duration is None else duration)


if __name__ == "__main__":
    sys.exit(main())
