import pytest

from mctp import log


@pytest.fixture
def collected():
    messages = []
    log.set_log_custom(lambda level, message: messages.append((level, message)))
    yield messages
    log.set_tracing_enabled(False)
    log.set_log_custom(lambda level, message: None)


def test_custom_sink_receives_level_and_message(collected):
    log.prlog(log.LOG_ERR, "core: something failed")
    assert collected == [(log.LOG_ERR, "core: something failed")]


def test_stdio_filters_by_level(capsys):
    log.set_log_stdio(log.LOG_WARNING)
    try:
        log.prlog(log.LOG_ERR, "shown")
        log.prlog(log.LOG_DEBUG, "hidden")
        err = capsys.readouterr().err
    finally:
        log.set_log_custom(lambda level, message: None)
    assert err == "shown\n"


def test_format_trace_short_payload():
    assert log.format_trace(b"\x01\xab") == "01 AB "


def test_format_trace_exactly_limit_not_truncated():
    text = log.format_trace(bytes(log.MAX_TRACE_BYTES))
    assert not text.endswith("..")
    assert len(text) == log.MAX_TRACE_BYTES * 3


def test_format_trace_truncates_long_payload():
    text = log.format_trace(bytes(range(200)))
    assert text.endswith("..")
    assert len(text) == (log.MAX_TRACE_BYTES - 1) * 3 + 2


def test_trace_disabled_emits_nothing(collected):
    log.set_tracing_enabled(False)
    log.trace_common("rx:", b"\x01\x02")
    assert collected == []


def test_trace_enabled_emits_debug(collected):
    log.set_tracing_enabled(True)
    log.trace_common("tx:", b"\x0f")
    assert collected == [(log.LOG_DEBUG, "tx: 0F ")]


def test_trace_empty_payload_emits_nothing(collected):
    log.set_tracing_enabled(True)
    log.trace_common("tx:", b"")
    assert collected == []