"""Structured Logging Utilities for `logging`.

This module provides structured-logging output (JSON and text) for the
ensemble merger, and a decorator that logs the arguments, completion
and failure of a function call. Every record carries contextual
information such as the call id, timestamp and thread.

Examples
--------

>>> @log_call()
>>> def scale(rate, weight):
>>>     return rate * weight
>>> scale(0.01, 0.5)
{"function": "scale", "id": "...", "args": {"rate": 0.01, "weight": 0.5}, "message": "called", "level": "INFO", "time": "...", "thread": "MainThread"}
{"function": "scale", "id": "...", "result": 0.005, "message": "completed", "level": "INFO", "time": "...", "thread": "MainThread"}
0.005
>>> log('merged realization', LoggingFormat.TEXT, ruptures=12)
2025-01-18 22:00:51.498268+00:00	INFO	merged realization	ruptures=12
"""

import enum
import functools
import inspect
import json
import logging
import os
import threading
import traceback
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import numpy as np


class LoggingFormat(Enum):
    """Enumeration of possible logging format outputs."""

    JSON = enum.auto()
    """Output log in JSON structured-logging format."""
    TEXT = enum.auto()
    """Output log in tab separated key=value structured-logging format."""


logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger("ensemble_forecast")


class LogEncoder(json.JSONEncoder):
    """JSON encoder for numpy values, enums and arbitrary objects."""

    def default(self, obj: Any) -> Any:
        """Encode the JSON representation of obj.

        Numpy scalars and arrays are converted to their python
        equivalents, enums to their values, and anything else falls
        back to repr(obj).

        Parameters
        ----------
        obj : Any
            Object to encode.

        Returns
        -------
        Any
            The encoded JSON object.
        """
        if isinstance(obj, (np.generic, np.ndarray)):
            return obj.tolist()
        if isinstance(obj, Enum):
            return obj.value
        try:
            return super().default(obj)
        except TypeError:
            return repr(obj)


def log(
    message: str,
    format: Optional[LoggingFormat] = None,
    level: int = logging.INFO,
    /,
    **kwargs: Any,
) -> None:
    """Log a message in a structured logging format.

    Parameters
    ----------
    message : str
        The message to log.
    format : Optional[LoggingFormat]
        The logging format to use, defaulting to the value of the
        environment variable LOG_FORMAT or `LoggingFormat.TEXT` if the
        environment variable is not present.
    level : int
        The level of the log. For example, the default is `logging.INFO`.
    kwargs : Any
        Keyword arguments to log in a structured logging format.
    """
    if not logger.isEnabledFor(level):
        return
    now = str(datetime.now(timezone.utc))
    level_name = logging.getLevelName(level)
    format = format or LoggingFormat[os.environ.get("LOG_FORMAT", "TEXT").upper()]

    match format:
        case LoggingFormat.JSON:
            logger.log(
                level,
                json.dumps(
                    kwargs
                    | {
                        "message": message,
                        "level": level_name,
                        "time": now,
                        "thread": threading.current_thread().name,
                    },
                    cls=LogEncoder,
                ),
            )
        case LoggingFormat.TEXT:
            structured_log_data = "\t".join(
                f"{key}={value!r}" for key, value in kwargs.items()
            )
            logger.log(level, f"{now}\t{level_name}\t{message}\t{structured_log_data}")


def log_call(
    action_name: Optional[str] = None,
    exclude_args: Optional[Iterable[str]] = None,
    include_result: bool = True,
) -> Callable:
    """Wrap a function with logging calls of the arguments and success status.

    Parameters
    ----------
    action_name : Optional[str]
        An alternative identifier for the function in the log output.
        If None, will use `f.__qualname__` as the identifier.
    exclude_args : Optional[Iterable[str]]
        Arguments to exclude from log reports.
    include_result : bool
        If True, log the result of function call.

    Returns
    -------
    Callable
        A decorator that logs its wrapped function's arguments every
        time the function is called, and logs once it has completed
        (with its return value if `include_result` is True) or failed
        (with the traceback, before re-raising).
    """
    excluded = set(exclude_args or ())

    def decorator(f: Callable) -> Callable:
        signature = inspect.signature(f)
        name = action_name or f.__qualname__

        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            function_id = str(uuid.uuid4())
            unified_arguments = {
                parameter: arg
                for parameter, arg in zip(signature.parameters, args)
                if parameter not in excluded
            } | {key: value for key, value in kwargs.items() if key not in excluded}
            log("called", function=name, id=function_id, args=unified_arguments)
            try:
                result = f(*args, **kwargs)
            except Exception:
                log(
                    "failed",
                    None,
                    logging.ERROR,
                    function=name,
                    id=function_id,
                    error=traceback.format_exc(),
                )
                raise
            if result is not None and include_result:
                log("completed", function=name, id=function_id, result=result)
            else:
                log("completed", function=name, id=function_id)
            return result

        return wrapper

    return decorator
