"""Tests for the structlog helpers."""

from structlog.testing import capture_logs

from mcp_server_manager.config.logging import get_logger, log_command, sanitize_log_data


class TestLoggingHelpers:
    """Test logger construction and log data helpers."""

    def test_get_logger_binds_initial_context(self):
        with capture_logs() as logs:
            get_logger("mcp_server_manager.test", server="echo").info("Starting server")

        assert logs == [{"server": "echo", "event": "Starting server", "log_level": "info"}]

    def test_get_logger_without_context(self):
        with capture_logs() as logs:
            get_logger("mcp_server_manager.test").warning("plain")

        assert logs == [{"event": "plain", "log_level": "warning"}]

    def test_log_command(self):
        with capture_logs() as logs:
            log_command(get_logger("cmd"), ["npm", "install"], 0, 12.345, server="echo")

        assert logs[0]["argv"] == ["npm", "install"]
        assert logs[0]["duration_ms"] == 12.3
        assert logs[0]["metric_type"] == "command"
        assert logs[0]["server"] == "echo"

    def test_sanitize_nested_secrets(self):
        data = {"GITHUB_TOKEN": "t", "LOG_LEVEL": "info", "nested": {"api_key": "k", "x": 1}}

        assert sanitize_log_data(data) == {
            "GITHUB_TOKEN": "[REDACTED]",
            "LOG_LEVEL": "info",
            "nested": {"api_key": "[REDACTED]", "x": 1},
        }
