"""Tests for shared logging configuration."""
import logging


def test_init_logging_returns_logger():
    """Test that init_logging returns a logger under the matchstore namespace."""
    from matchstore.log import init_logging

    logger = init_logging("test")
    assert isinstance(logger, logging.Logger)
    assert logger.name == "matchstore.test"


def test_program_name_padding():
    """Test that program names are padded to 8 characters for alignment."""
    from matchstore.log import init_logging

    init_logging("cli")
    handler = logging.getLogger().handlers[0]
    assert "cli     " in handler.formatter._fmt

    init_logging("cloud")
    handler = logging.getLogger().handlers[0]
    assert "cloud   " in handler.formatter._fmt


def test_different_colors():
    """Test that different programs can have different colors."""
    from matchstore.log import init_logging

    init_logging("cli", color="dim cyan")
    handler = logging.getLogger().handlers[0]
    assert "dim cyan" in handler.formatter._fmt

    init_logging("cloud", color="dim magenta")
    handler = logging.getLogger().handlers[0]
    assert "dim magenta" in handler.formatter._fmt


def test_logging_level():
    """Test that the requested level is applied to the root logger."""
    from matchstore.log import init_logging

    init_logging("test")
    assert logging.getLogger().level == logging.INFO

    init_logging("cli", level=logging.WARNING)
    assert logging.getLogger().level == logging.WARNING


def test_rich_handler_used():
    """Test that RichHandlerWithLoggerName is configured."""
    from matchstore.log import RichHandlerWithLoggerName, init_logging

    init_logging("test")
    root_logger = logging.getLogger()
    assert len(root_logger.handlers) > 0
    assert isinstance(root_logger.handlers[0], RichHandlerWithLoggerName)


def test_format_includes_pid_tid_and_message():
    """Test that the format string carries process, thread and message."""
    from matchstore.log import init_logging

    init_logging("test")
    format_str = logging.getLogger().handlers[0].formatter._fmt

    assert "%(process)d" in format_str
    assert "%(thread)d" in format_str
    assert "PID:" in format_str
    assert "TID:" in format_str
    assert "%(message)s" in format_str


def test_uvicorn_routed_through_root():
    """Test that uvicorn loggers propagate to the Rich handler."""
    from matchstore.log import init_logging

    init_logging("cloud")
    uvicorn_logger = logging.getLogger("uvicorn")
    assert uvicorn_logger.propagate is True
    assert len(uvicorn_logger.handlers) == 0
    assert logging.getLogger("uvicorn.access").level == logging.WARNING


def test_handler_shows_logger_name_for_matchstore_records():
    """matchstore records display their logger name instead of a file path."""
    from rich.text import Text

    from matchstore.log import RichHandlerWithLoggerName

    handler = RichHandlerWithLoggerName(markup=True)
    record = logging.LogRecord("matchstore.queue", logging.INFO, "/src/matchstore/queue.py", 42, "hi", None, None)
    handler.render(record=record, traceback=None, message_renderable=Text("hi"))

    assert record.pathname == "matchstore.queue"
    assert record.filename == "matchstore.queue"


def test_handler_keeps_path_for_other_records():
    """Third-party records keep their original path."""
    from rich.text import Text

    from matchstore.log import RichHandlerWithLoggerName

    handler = RichHandlerWithLoggerName(markup=True)
    record = logging.LogRecord("uvicorn.error", logging.INFO, "/site-packages/uvicorn/server.py", 7, "up", None, None)
    handler.render(record=record, traceback=None, message_renderable=Text("up"))

    assert record.pathname == "/site-packages/uvicorn/server.py"
    assert record.filename == "server.py"
