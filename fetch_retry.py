import re
import time
import logging
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_DELAY_MS = 1000

_KEY_PARAM = re.compile(r"([?&]key=)[^&\s'\"]+")


def redact_key(url: str) -> str:
    """Hide the value of a `key` query parameter."""
    return _KEY_PARAM.sub(r"\1<redacted>", url)


def fetch_with_backoff(
    url: str,
    method: str = "POST",
    retries: int = DEFAULT_RETRIES,
    delay: int = DEFAULT_DELAY_MS,
    max_delay: Optional[int] = None,
    timeout: Optional[float] = None,
    sleep: Optional[Callable[[float], None]] = None,
    **options,
) -> requests.Response:
    """Send a request, retrying with exponential backoff.

    Network errors and any non-2xx status count as failures. After a failure
    the call waits `delay` milliseconds and tries again, doubling the delay
    each time (capped at `max_delay` when given), until `retries` retries
    have been spent. The last failure is then re-raised.

    A `json=` body that cannot be encoded is raised at once, not retried.
    Extra keyword arguments (headers, json, data, ...) go to `requests`.
    The response is returned unread on the first 2xx.
    """
    if sleep is None:
        sleep = time.sleep

    while True:
        try:
            resp = requests.request(method, url, timeout=timeout, **options)
            if not 200 <= resp.status_code < 300:
                raise requests.HTTPError(
                    f"HTTP error! status: {resp.status_code}", response=resp
                )
            return resp
        except requests.exceptions.InvalidJSONError:
            # a body that cannot be encoded fails the same way on every attempt
            raise
        except requests.RequestException as e:
            if retries <= 0:
                raise
            logger.warning(
                "Fetch failed, retrying in %dms... %s",
                delay,
                redact_key(str(e)),
            )
            sleep(delay / 1000)
            retries -= 1
            delay *= 2
            if max_delay is not None:
                delay = min(delay, max_delay)
