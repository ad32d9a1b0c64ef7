from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from provisioner.src.__main__ import JSONFormatter, configure_logging, main
from provisioner.src.errors import ConfigError


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert parsed["thread"] == threading.current_thread().name
        assert "ts" in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_omits_error_when_no_exception(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert "error" not in parsed

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg=(
                "token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi "
                "url=/readyz?access_token=qwerty"
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message
        assert "access_token=qwerty" not in message


def test_configure_logging_keeps_kubernetes_client_quiet() -> None:
    root_handlers = list(logging.root.handlers)
    root_level = logging.root.level
    try:
        configure_logging("DEBUG")
        assert logging.root.level == logging.DEBUG
        assert logging.getLogger("kubernetes").level == logging.INFO
    finally:
        logging.root.handlers = root_handlers
        logging.root.setLevel(root_level)


def _stub_controller() -> MagicMock:
    controller = MagicMock()
    controller.ready = threading.Event()
    controller.watch_registry.watched_kinds.return_value = ["a", "b"]

    def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
        if shutdown_event is not None:
            shutdown_event.set()

    controller.run_forever.side_effect = fake_run_forever
    return controller


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    @pytest.fixture(autouse=True)
    def _restore_logging(self) -> Iterator[None]:
        root_handlers = list(logging.root.handlers)
        root_level = logging.root.level
        yield
        logging.root.handlers = root_handlers
        logging.root.setLevel(root_level)

    def test_main_wires_components(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9090")
        controller = _stub_controller()
        clients = SimpleNamespace(core_api=None, custom_api=None, dynamic_client=None)

        with (
            patch("provisioner.src.__main__.load_kube_configuration") as mock_load,
            patch("provisioner.src.__main__.build_clients", return_value=clients),
            patch(
                "provisioner.src.__main__.build_controller", return_value=controller
            ) as mock_build,
            patch("provisioner.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_load.assert_called_once()
        config, passed_clients = mock_build.call_args.args
        assert config.health_port == 9090
        assert passed_clients is clients
        controller.run_forever.assert_called_once()
        health_kwargs = mock_health.call_args.kwargs
        assert health_kwargs["ready"] is controller.ready
        assert health_kwargs["port"] == 9090
        assert health_kwargs["watch_count"]() == 2
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("provisioner.src.__main__.load_kube_configuration"),
            patch("provisioner.src.__main__.build_clients", return_value=SimpleNamespace()),
            patch("provisioner.src.__main__.build_controller", return_value=_stub_controller()),
            patch("provisioner.src.__main__.start_health_server", return_value=MagicMock()),
            patch("provisioner.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            main()

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("provisioner.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()

        mock_load.assert_not_called()
