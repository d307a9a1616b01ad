"""Shared HTTP session construction."""

from __future__ import annotations

from typing import Optional, Union

import certifi
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .. import __version__

USER_AGENT = f"push-validator/{__version__}"


def make_session(
    retries: int = 0,
    backoff_factor: float = 0.5,
    ca_bundle: Optional[str] = None,
) -> requests.Session:
    """Create a requests session with a bounded retry policy.

    ``retries=0`` disables transport retries so callers own the policy.
    """
    session = requests.Session()
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        backoff_factor=backoff_factor,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=("GET", "HEAD"),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(
        max_retries=retry,
        pool_connections=4,
        pool_maxsize=8,
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    verify: Union[str, bool] = ca_bundle or certifi.where()
    session.verify = verify
    session.headers.update({"User-Agent": USER_AGENT})
    return session
