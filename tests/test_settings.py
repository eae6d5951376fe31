"""Tests for environment-backed settings."""

from settings import DEFAULT_PORT, load_settings


def test_defaults():
    s = load_settings({})
    assert s.port == DEFAULT_PORT
    assert s.host == "0.0.0.0"
    assert s.host_configured is False
    assert s.webhook_secret_token == ""
    assert s.heartbeat_interval == 30.0
    assert s.internal_host_patterns == ("gitlab-0",)
    assert s.debug_dump_events is False


def test_values_from_env():
    s = load_settings(
        {
            "PORT": "8080",
            "HOST": "relay.local",
            "WEBHOOK_SECRET_TOKEN": " tok ",
            "WECHAT_WORK_WEBHOOK_URL": "https://qyapi.example.com/send?key=k",
            "SSE_HEARTBEAT_INTERVAL": "5",
            "GITLAB_INTERNAL_HOST_PATTERNS": "gitlab-0, .svc.cluster.local ,",
            "LOG_LEVEL": "debug",
            "WEBHOOK_DEBUG_DUMP_EVENT": "1",
        }
    )
    assert s.port == 8080
    assert s.host == "relay.local"
    assert s.host_configured is True
    assert s.webhook_secret_token == "tok"
    assert s.wechat_work_webhook_url.startswith("https://")
    assert s.heartbeat_interval == 5.0
    assert s.internal_host_patterns == ("gitlab-0", ".svc.cluster.local")
    assert s.log_level == "DEBUG"
    assert s.debug_dump_events is True


def test_malformed_numbers_fall_back():
    s = load_settings({"PORT": "abc", "SSE_QUEUE_SIZE": "-3", "SSE_WRITE_TIMEOUT": "x"})
    assert s.port == DEFAULT_PORT
    assert s.sse_queue_size == 200
    assert s.sse_write_timeout == 1.0


def test_empty_pattern_list_disables_internal_match():
    s = load_settings({"GITLAB_INTERNAL_HOST_PATTERNS": ""})
    assert s.is_internal_instance_url("http://gitlab-0") is False
    assert s.is_internal_instance_url("") is True
