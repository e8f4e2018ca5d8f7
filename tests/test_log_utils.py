import json
import logging
import re

import numpy as np
import pytest

from ensemble_forecast import log_utils
from ensemble_forecast.log_utils import LoggingFormat
from ensemble_forecast.match_keys import MatchKey


def test_text_log(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    log_utils.log("test", LoggingFormat.TEXT, a=1, b="x")
    assert len(caplog.messages) == 1
    assert re.match(r".*\tINFO\ttest\ta=1\tb='x'$", caplog.messages[0])


def test_json_log(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    log_utils.log(
        "merged",
        LoggingFormat.JSON,
        rate=np.float64(0.5),
        rates=np.array([1.0, 2.0]),
        match_key=MatchKey.FULL,
    )
    record = json.loads(caplog.messages[0])
    assert record["message"] == "merged"
    assert record["level"] == "INFO"
    assert record["rate"] == 0.5
    assert record["rates"] == [1.0, 2.0]
    assert record["match_key"] == "full"
    assert "time" in record and "thread" in record


def test_log_format_from_environment(
    caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
):
    caplog.set_level(logging.INFO)
    monkeypatch.setenv("LOG_FORMAT", "json")
    log_utils.log("test", a=1)
    assert json.loads(caplog.messages[0])["a"] == 1


def test_log_level_filtered(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    log_utils.log("hidden", None, logging.DEBUG, a=1)
    assert caplog.messages == []


@log_utils.log_call()
def foo(a, b):
    return a + b


def test_basic_log(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    _ = foo(1, 2)

    assert len(caplog.messages) == 2

    call_log = caplog.messages[0]
    assert re.search(
        r"called\tfunction='foo'\tid='.*'\targs=\{'a': 1, 'b': 2\}",
        call_log,
    )
    return_log = caplog.messages[1]
    assert re.search(
        r"completed\tfunction='foo'\tid='.*'\tresult=3",
        return_log,
    )


@log_utils.log_call(exclude_args={"b"})
def foo_less_b(a, b):
    return a + b


def test_excluded_log(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)

    _ = foo_less_b(1, b=2)

    assert len(caplog.messages) == 2
    call_log = caplog.messages[0]
    assert re.search(
        r"called\tfunction='foo_less_b'\tid='.*'\targs=\{'a': 1\}",
        call_log,
    )
    return_log = caplog.messages[1]
    assert re.search(
        r"completed\tfunction='foo_less_b'\tid='.*'\tresult=3",
        return_log,
    )


@log_utils.log_call(action_name="FOOBAR")
def bar(a):
    pass


def test_renamed_bar(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    bar(1)

    assert len(caplog.messages) == 2
    assert re.search(r"called\tfunction='FOOBAR'", caplog.messages[0])
    assert re.search(r"completed\tfunction='FOOBAR'\tid='[^']*'$", caplog.messages[1])


@log_utils.log_call(include_result=False)
def baz(a):
    return 1


def test_no_result(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    baz(1)

    assert len(caplog.messages) == 2
    return_log = caplog.messages[1]
    assert re.search(r"completed\tfunction='baz'\tid='[^']*'$", return_log)
    assert "result" not in return_log


@log_utils.log_call()
def failing_function():
    raise ValueError("This function should fail!")


def test_failing_function(caplog: pytest.LogCaptureFixture):
    caplog.set_level(logging.INFO)
    with pytest.raises(ValueError):
        failing_function()

    assert len(caplog.messages) == 2
    failure_log = caplog.messages[1]
    assert re.search(
        r"\tERROR\tfailed\tfunction='failing_function'\tid='.*'\terror='Traceback",
        failure_log,
    )
    assert "This function should fail!" in failure_log
