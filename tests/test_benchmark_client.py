"""Tests for the gateway HTTP client and request statistics."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from llmd_cpu.benchmark.client import (
    BenchmarkStats,
    RequestResult,
    chat_completion,
    chat_payload,
    check_gateway,
    list_models,
    percentile,
    send_batch,
    user_message,
)


def completion_response(content="Hello!", status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.text = "upstream error" if status_code != 200 else ""
    response.json.return_value = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    return response


class TestPayload:
    """Tests for request payload construction."""

    def test_chat_payload(self, ev):
        payload = chat_payload(ev, user_message("hi"), 20, 0.0)

        assert payload == {
            "model": "TinyLlama/TinyLlama-1.1B-Chat-v1.0",
            "messages": [{"role": "user", "content": "hi"}],
            "max_tokens": 20,
            "temperature": 0.0,
        }

    def test_temperature_is_optional(self, ev):
        assert "temperature" not in chat_payload(ev, user_message("hi"), 20)


class TestChatCompletion:
    """Tests for chat_completion."""

    @patch("llmd_cpu.benchmark.client.requests.post")
    def test_success(self, mock_post, ev):
        mock_post.return_value = completion_response("Hello there")

        result = chat_completion(ev, user_message("Say hello"), max_tokens=20, temperature=0.7)

        assert result.ok is True
        assert result.content == "Hello there"
        assert result.latency >= 0
        url = mock_post.call_args.args[0]
        assert url == "http://localhost:8000/v1/chat/completions"
        assert mock_post.call_args.kwargs["json"]["max_tokens"] == 20
        assert mock_post.call_args.kwargs["timeout"] == 300

    @patch("llmd_cpu.benchmark.client.requests.post")
    def test_http_error(self, mock_post, ev):
        mock_post.return_value = completion_response(status_code=503)

        result = chat_completion(ev, user_message("Say hello"), max_tokens=20)

        assert result.ok is False
        assert result.status_code == 503
        assert result.error == "upstream error"

    @patch("llmd_cpu.benchmark.client.requests.post")
    def test_connection_error(self, mock_post, ev):
        mock_post.side_effect = requests.ConnectionError("refused")

        result = chat_completion(ev, user_message("Say hello"), max_tokens=20)

        assert result.ok is False
        assert result.status_code == 0
        assert "refused" in result.error

    @patch("llmd_cpu.benchmark.client.requests.post")
    def test_malformed_body(self, mock_post, ev):
        response = completion_response()
        response.json.return_value = {"choices": []}
        mock_post.return_value = response

        result = chat_completion(ev, user_message("Say hello"), max_tokens=20)

        assert result.ok is False
        assert result.error.startswith("malformed response")


class TestGateway:
    """Tests for the gateway probes."""

    @patch("llmd_cpu.benchmark.client.requests.get")
    def test_list_models(self, mock_get, ev):
        mock_get.return_value.json.return_value = {"object": "list", "data": [{"id": "TinyLlama/TinyLlama-1.1B-Chat-v1.0"}]}

        assert list_models(ev) == ["TinyLlama/TinyLlama-1.1B-Chat-v1.0"]
        mock_get.assert_called_once_with("http://localhost:8000/v1/models", timeout=5)

    @patch("llmd_cpu.benchmark.client.requests.get")
    def test_check_gateway_reachable(self, mock_get, ev):
        assert check_gateway(ev) is True

    @patch("llmd_cpu.benchmark.client.requests.get", side_effect=requests.ConnectionError("refused"))
    def test_check_gateway_unreachable(self, mock_get, ev):
        assert check_gateway(ev) is False


class TestSendBatch:
    """Tests for concurrent request batches."""

    def test_empty(self, ev):
        assert send_batch(ev, []) == []

    @patch("llmd_cpu.benchmark.client.post_chat")
    def test_results_follow_payload_order(self, mock_post_chat, ev):
        mock_post_chat.side_effect = lambda ev, payload: RequestResult(True, 200, 0.1, payload["messages"][0]["content"])
        payloads = [chat_payload(ev, user_message(f"q{i}"), 10) for i in range(5)]

        results = send_batch(ev, payloads)

        assert [r.content for r in results] == ["q0", "q1", "q2", "q3", "q4"]

    @patch("llmd_cpu.benchmark.client.time.sleep")
    @patch("llmd_cpu.benchmark.client.post_chat", return_value=RequestResult(True, 200, 0.1, "ok"))
    def test_stagger(self, mock_post_chat, mock_sleep, ev):
        send_batch(ev, [chat_payload(ev, user_message("q"), 10)] * 4, stagger=0.1)

        assert mock_sleep.call_count == 4
        mock_sleep.assert_called_with(0.1)


class TestBenchmarkStats:
    """Tests for BenchmarkStats."""

    def test_record_and_summary(self):
        stats = BenchmarkStats()
        stats.record([
            RequestResult(True, 200, 0.1, "a"),
            RequestResult(True, 200, 0.3, "b"),
            RequestResult(False, 503, 0.05, error="busy"),
            RequestResult(False, 0, 1.0, error="refused"),
        ])

        summary = stats.summary()
        assert summary["total"] == 4
        assert summary["succeeded"] == 2
        assert summary["failed"] == 2
        assert summary["mean_latency_ms"] == pytest.approx(200.0)
        assert summary["errors"] == {503: 1, "connection": 1}

    def test_empty_summary(self):
        summary = BenchmarkStats().summary()

        assert summary["total"] == 0
        assert summary["p95_latency_ms"] == 0.0

    def test_percentile(self):
        values = [float(v) for v in range(1, 101)]

        assert percentile(values, 50) == pytest.approx(51.0)
        assert percentile(values, 95) == pytest.approx(95.0)
        assert percentile([], 95) == 0.0
