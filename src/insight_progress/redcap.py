"""
REDCap record export.

Exports every record of a project as CSV with factor labels (not codes) and
checkbox labels, which is the form the loader and mapper expect.

Environment
-----------
REDCAP_API_URL     : API endpoint (default "https://redcap.vanderbilt.edu/api/")
INSIGHT_EXC_TOKEN  : API token of the exclusion/screening project
INSIGHT_IH_TOKEN   : API token of the in-hospital project
INSIGHT_FU_TOKEN   : API token of the follow-up project
"""

from __future__ import annotations

import logging
import os
import time

import requests

logger = logging.getLogger(__name__)


class RedcapError(RuntimeError):
    """Raised when a REDCap export cannot be retrieved."""


_API_URL = os.getenv("REDCAP_API_URL", "https://redcap.vanderbilt.edu/api/")

# Table kind → environment variable holding the project token
TOKEN_VARIABLES = {
    "exclusion": "INSIGHT_EXC_TOKEN",
    "inhosp": "INSIGHT_IH_TOKEN",
    "followup": "INSIGHT_FU_TOKEN",
}


def _sleep_backoff(i: int) -> None:
    """Small exponential backoff: ~0.5s, 1s, 2s."""
    time.sleep(0.5 * (2**i))


def get_token(kind: str) -> str:
    try:
        variable = TOKEN_VARIABLES[kind]
    except KeyError:
        raise ValueError(f"Unknown table kind: {kind!r}")
    token = os.getenv(variable)
    if not token:
        raise RedcapError(f"REDCap token for {kind!r} not set; export {variable}")
    return token


def export_records(token: str, *, api_url: str | None = None, timeout: float = 60.0, attempts: int = 3) -> str:
    """
    POST a record export request and return the CSV body.

    Retries on network/HTTP problems and raises RedcapError if all attempts fail.
    """
    payload = {
        "token": token,
        "content": "record",
        "format": "csv",
        "rawOrLabel": "label",
        "exportCheckboxLabel": "true",
        "exportDataAccessGroups": "false",
    }
    url = api_url or _API_URL
    last_exc: Exception | None = None
    for i in range(attempts):
        try:
            resp = requests.post(url, data=payload, timeout=timeout)
            resp.raise_for_status()
            return resp.text
        except requests.RequestException as e:
            last_exc = e
            logger.warning(f"REDCap export attempt {i + 1}/{attempts} failed: {e}")
            if i < attempts - 1:
                _sleep_backoff(i)
    raise RedcapError(f"REDCap export failed after {attempts} attempts: {last_exc}")
