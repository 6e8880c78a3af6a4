"""Unwrap backend ``{data}`` / ``{error}`` envelopes."""

import json
from typing import Any, Mapping

from codebridge.core.errors import BackendError

FALLBACK_MESSAGE = "OpenCode request failed"


def _error_message(error: Any) -> str:
    if isinstance(error, Mapping):
        data = error.get("data")
        if isinstance(data, Mapping) and data.get("message"):
            return str(data["message"])
        if error.get("name"):
            return str(error["name"])
    try:
        rendered = json.dumps(error, default=str)
    except (TypeError, ValueError):
        rendered = ""
    return rendered or FALLBACK_MESSAGE


def unwrap_data(result: Any) -> Any:
    """
    Return the payload of a backend envelope.

    An envelope with an ``error`` raises BackendError, one with ``data``
    yields that value unchanged, anything else is returned as is.
    """
    if isinstance(result, Mapping):
        error = result.get("error")
        if error:
            raise BackendError(_error_message(error))
        if "data" in result:
            return result["data"]
    return result
