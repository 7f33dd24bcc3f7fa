"""Tests for the shared helpers in llmd_cpu.functions."""

import os
from unittest.mock import MagicMock, patch

import pytest

from llmd_cpu import functions
from llmd_cpu.functions import (
    announce,
    capture_json,
    count_ready_pods,
    environment_variable_to_dict,
    get_image,
    kubectl_apply,
    llmdcpu_execute_cmd,
    namespace_exists,
    prompt_yes_no,
    resolve_driver,
    wait_for_pods,
)


class TestEnvironmentVariableToDict:
    """Tests for building the configuration dictionary."""

    def test_defaults(self, ev, tmp_path):
        assert ev["deploy_namespace"] == "llm-d-cpu-inference"
        assert ev["deploy_model"] == "TinyLlama/TinyLlama-1.1B-Chat-v1.0"
        assert ev["cluster_provider"] == "minikube"
        assert ev["cluster_driver"] == "auto"
        assert ev["control_work_dir"] == str(tmp_path)
        assert ev["control_dry_run"] is False
        assert ev["deploy_decode_replicas"] == 2
        assert ev["benchmark_temperature"] == pytest.approx(0.7)

    def test_prefixed_variables_override_defaults(self, monkeypatch):
        monkeypatch.setenv("LLMDCPU_DEPLOY_DECODE_REPLICAS", "3")
        monkeypatch.setenv("LLMDCPU_CONTROL_DRY_RUN", "true")
        monkeypatch.setenv("LLMDCPU_CLUSTER_PROVIDER", "KIND")

        ev = environment_variable_to_dict()

        assert ev["deploy_decode_replicas"] == 3
        assert ev["control_dry_run"] is True
        assert ev["cluster_provider"] == "kind"
        assert ev["cluster_context"] == "kind-llm-d-cpu"

    def test_numeric_booleans(self, monkeypatch):
        monkeypatch.setenv("LLMDCPU_CONTROL_NON_INTERACTIVE", "1")

        ev = environment_variable_to_dict()

        assert ev["control_non_interactive"] is True

    def test_legacy_variables(self, monkeypatch):
        monkeypatch.setenv("QUAY_USERNAME", "alice")
        monkeypatch.setenv("MINIKUBE_DRIVER", "docker")
        monkeypatch.setenv("ENABLE_GPU", "true")
        monkeypatch.setenv("GATEWAY_URL", "http://gateway.local:9000/")

        ev = environment_variable_to_dict()

        assert ev["image_registry_username"] == "alice"
        assert ev["image_vllm_remote"] == "quay.io/alice/llm-d-cpu:v0.4.0-arm64"
        assert ev["cluster_driver"] == "docker"
        assert ev["cluster_enable_gpu"] is True
        assert ev["benchmark_gateway_url"] == "http://gateway.local:9000"

    def test_gateway_url_follows_local_port(self, monkeypatch):
        monkeypatch.setenv("LLMDCPU_DEPLOY_LOCAL_PORT", "9000")

        ev = environment_variable_to_dict()

        assert ev["benchmark_gateway_url"] == "http://localhost:9000"

    def test_explicit_gateway_url_is_kept(self, monkeypatch):
        monkeypatch.setenv("LLMDCPU_DEPLOY_LOCAL_PORT", "9000")
        monkeypatch.setenv("LLMDCPU_BENCHMARK_GATEWAY_URL", "http://gw:8080")

        ev = environment_variable_to_dict()

        assert ev["benchmark_gateway_url"] == "http://gw:8080"

    def test_prefixed_variable_wins_over_legacy(self, monkeypatch):
        monkeypatch.setenv("QUAY_USERNAME", "alice")
        monkeypatch.setenv("LLMDCPU_IMAGE_REGISTRY_USERNAME", "bob")

        ev = environment_variable_to_dict()

        assert ev["image_registry_username"] == "bob"

    def test_derived_names(self, ev):
        assert ev["deploy_gateway_name"] == "infra-cpu-inference-inference-gateway"
        assert ev["deploy_gateway_service"] == "infra-cpu-inference-inference-gateway-istio"
        assert ev["deploy_epp_selector"] == "inferencepool=gaie-cpu-inference-epp"
        assert ev["cluster_context"] == "llm-d-cpu"


class TestGetImage:
    """Tests for image reference construction."""

    def test_remote(self, ev):
        assert get_image(ev, "epp") == "quay.io/petecheslock/gateway-api-inference-extension-epp:v1.2.0-rc.1-arm64"

    def test_local(self, ev):
        assert get_image(ev, "routing_sidecar", remote=False) == "localhost/llm-d-routing-sidecar:v0.4.0-rc.1-arm64"

    def test_tag_only(self, ev):
        assert get_image(ev, "vllm", tag_only=True) == "v0.4.0-arm64"


class TestAnnounce:
    """Tests for announce."""

    def test_writes_step_log(self, tmp_path):
        announce("hello world")

        log_file = tmp_path / "logs" / "test.log"
        assert "hello world" in log_file.read_text()

    def test_error_exits(self):
        with pytest.raises(SystemExit) as exc_info:
            announce("ERROR: something broke")
        assert exc_info.value.code == 1

    def test_error_can_be_ignored(self, tmp_path):
        announce("ERROR: something broke", ignore_if_failed=True)

        assert "something broke" in (tmp_path / "logs" / "test.log").read_text()


class TestExecuteCmd:
    """Tests for llmdcpu_execute_cmd."""

    @patch("llmd_cpu.functions.subprocess.run")
    def test_dry_run_does_not_execute(self, mock_run, tmp_path):
        assert llmdcpu_execute_cmd("echo hi", dry_run=True) == 0

        mock_run.assert_not_called()
        command_logs = list((tmp_path / "setup" / "commands").glob("*_command.log"))
        assert len(command_logs) == 1
        assert "echo hi" in command_logs[0].read_text()

    @patch("llmd_cpu.functions.time.sleep")
    @patch("llmd_cpu.functions.subprocess.run")
    def test_retries_until_success(self, mock_run, mock_sleep):
        mock_run.side_effect = [MagicMock(returncode=1), MagicMock(returncode=0)]

        assert llmdcpu_execute_cmd("flaky", dry_run=False, attempts=3, delay=7) == 0

        assert mock_run.call_count == 2
        mock_sleep.assert_called_once_with(7)

    @patch("llmd_cpu.functions.subprocess.run")
    def test_returns_exit_code(self, mock_run):
        mock_run.return_value = MagicMock(returncode=2)

        assert llmdcpu_execute_cmd("false", dry_run=False) == 2

    @patch("llmd_cpu.functions.subprocess.run")
    def test_fatal_exits(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1)

        with pytest.raises(SystemExit):
            llmdcpu_execute_cmd("false", dry_run=False, fatal=True)


class TestCaptureJson:
    """Tests for capture_json."""

    @patch("llmd_cpu.functions.capture_cmd")
    def test_parses_stdout_regardless_of_exit_code(self, mock_capture):
        mock_capture.return_value = (7, '{"Host": "Stopped"}')

        assert capture_json("minikube status -o json") == {"Host": "Stopped"}

    @patch("llmd_cpu.functions.capture_cmd")
    def test_default_on_garbage(self, mock_capture):
        mock_capture.return_value = (0, "not json")

        assert capture_json("whatever", default=[]) == []


class TestPromptYesNo:
    """Tests for prompt_yes_no."""

    @patch("builtins.input")
    def test_non_interactive_returns_default(self, mock_input, ev):
        ev["control_non_interactive"] = True

        assert prompt_yes_no("Continue?", ev, default=True) is True
        mock_input.assert_not_called()

    @patch("builtins.input", return_value="y")
    def test_yes(self, mock_input, ev):
        assert prompt_yes_no("Continue?", ev) is True

    @patch("builtins.input", return_value="")
    def test_empty_reply_is_no(self, mock_input, ev):
        assert prompt_yes_no("Continue?", ev) is False

    @patch("builtins.input", side_effect=EOFError)
    def test_eof_returns_default(self, mock_input, ev):
        assert prompt_yes_no("Continue?", ev) is False


class TestResolveDriver:
    """Tests for container runtime resolution."""

    def test_explicit_driver_is_kept(self):
        assert resolve_driver("docker") == "docker"

    @patch("llmd_cpu.functions.check_command", side_effect=lambda c: c == "podman")
    def test_auto_prefers_podman(self, mock_check):
        assert resolve_driver("auto") == "podman"

    @patch("llmd_cpu.functions.check_command", side_effect=lambda c: c == "docker")
    def test_auto_falls_back_to_docker(self, mock_check):
        assert resolve_driver("auto") == "docker"

    @patch("llmd_cpu.functions.check_command", return_value=False)
    def test_auto_without_runtime(self, mock_check):
        assert resolve_driver("auto") == ""


class TestKubernetesHelpers:
    """Tests for the pykube wrappers."""

    def test_namespace_exists_without_api(self):
        assert namespace_exists(None, "anything") is False

    @patch("llmd_cpu.functions.kubectl_get")
    def test_count_ready_pods(self, mock_get, make_pod):
        pods = [make_pod("a"), make_pod("b", ready=False), make_pod("c")]
        mock_get.return_value = (pods, [p.name for p in pods])

        assert count_ready_pods(MagicMock(), "ns", "app=x") == 2

    @patch("llmd_cpu.functions.pykube.object_factory")
    def test_kubectl_apply_creates_missing_object(self, mock_factory):
        instance = MagicMock()
        instance.exists.return_value = False
        mock_factory.return_value = MagicMock(return_value=instance)

        manifest = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "demo"}}
        kubectl_apply(MagicMock(), manifest)

        instance.create.assert_called_once()
        instance.update.assert_not_called()

    def test_kube_connect_unknown_context(self, kubeconfig):
        api, _ = functions.kube_connect("llm-d-cpu", config_path=str(kubeconfig), ignore_if_failed=True)

        assert api is None

    def test_kube_connect_unknown_context_is_fatal(self, kubeconfig):
        with pytest.raises(SystemExit):
            functions.kube_connect("llm-d-cpu", config_path=str(kubeconfig))

    def test_kube_connect_missing_file(self, tmp_path):
        api, _ = functions.kube_connect(
            "llm-d-cpu", config_path=str(tmp_path / "missing"), ignore_if_failed=True
        )

        assert api is None

    @patch("llmd_cpu.functions.pykube.object_factory")
    def test_kubectl_apply_dry_run(self, mock_factory):
        kubectl_apply(None, "apiVersion: v1\nkind: Namespace\nmetadata:\n  name: demo\n", dry_run=True)

        mock_factory.assert_not_called()


class TestWaitForPods:
    """Tests for wait_for_pods."""

    @patch("llmd_cpu.functions.time.sleep")
    @patch("llmd_cpu.functions.count_ready_pods")
    def test_waits_until_expected_count(self, mock_count, mock_sleep, ev):
        mock_count.side_effect = [0, 1, 2]

        assert wait_for_pods(MagicMock(), ev, "ns", "app=x", expected=2, timeout=600) == 0
        assert mock_sleep.call_count == 2

    @patch("llmd_cpu.functions.kubectl_get")
    @patch("llmd_cpu.functions.time.sleep")
    @patch("llmd_cpu.functions.count_ready_pods", return_value=0)
    def test_timeout(self, mock_count, mock_sleep, mock_get, ev, make_pod):
        pod = make_pod("stuck", ready=False, phase="Pending")
        mock_get.return_value = ([pod], ["stuck"])

        assert wait_for_pods(MagicMock(), ev, "ns", "app=x", expected=1, timeout=10) == 1
        assert mock_count.call_count == 2

    @patch("llmd_cpu.functions.count_ready_pods")
    def test_dry_run_skips_polling(self, mock_count, dry_run_ev):
        assert wait_for_pods(None, dry_run_ev, "ns", "app=x", expected=1) == 0
        mock_count.assert_not_called()


class TestPodmanMachine:
    """Tests for ensure_podman_machine."""

    @patch("llmd_cpu.functions.is_darwin", return_value=False)
    @patch("llmd_cpu.functions.podman_machines")
    def test_noop_off_macos(self, mock_machines, mock_darwin, ev):
        assert functions.ensure_podman_machine(ev, cpus=4, memory_mb=8192, disk_gb=100) == 0
        mock_machines.assert_not_called()

    @patch("llmd_cpu.functions.time.sleep")
    @patch("llmd_cpu.functions.llmdcpu_execute_cmd", return_value=0)
    @patch("llmd_cpu.functions.is_darwin", return_value=True)
    @patch("llmd_cpu.functions.podman_machines")
    def test_creates_and_starts_machine(self, mock_machines, mock_darwin, mock_exec, mock_sleep, ev):
        mock_machines.side_effect = [[], [{"Name": "podman-machine-default", "Running": False}]]

        assert functions.ensure_podman_machine(ev, cpus=4, memory_mb=8192, disk_gb=100) == 0

        commands = [c.args[0] for c in mock_exec.call_args_list]
        assert commands[0] == "podman machine init --cpus 4 --memory 8192 --disk-size 100 --rootful"
        assert commands[1] == "podman machine start"

    @patch("llmd_cpu.functions.capture_json", return_value=[{"Rootful": False}])
    @patch("llmd_cpu.functions.llmdcpu_execute_cmd", return_value=0)
    @patch("llmd_cpu.functions.is_darwin", return_value=True)
    @patch("llmd_cpu.functions.podman_machines", return_value=[{"CPUs": 10, "Running": True}])
    def test_switches_to_rootful(self, mock_machines, mock_darwin, mock_exec, mock_inspect, ev):
        assert functions.ensure_podman_machine(ev, 4, 8192, 100, require_rootful=True) == 0

        commands = [c.args[0] for c in mock_exec.call_args_list]
        assert commands == ["podman machine stop", "podman machine set --rootful", "podman machine start"]


class TestKillPortForward:
    """Tests for stopping stale port-forwards."""

    @patch("llmd_cpu.functions.llmdcpu_execute_cmd", return_value=0)
    def test_pattern_skips_own_shell(self, mock_exec, ev):
        functions.kill_port_forward(ev, "infra-cpu-inference")

        assert mock_exec.call_args.args[0] == 'pkill -f "[k]ubectl port-forward.*infra-cpu-inference" || true'


def test_work_dir_exported(ev, tmp_path):
    assert os.environ["LLMDCPU_CONTROL_WORK_DIR"] == str(tmp_path)
