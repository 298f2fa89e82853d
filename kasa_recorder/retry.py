from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

log = logging.getLogger(__name__)


def retry_call(
    fn: Callable[[], T],
    transient: Tuple[Type[BaseException], ...],
    retries: int = 3,
    delay_seconds: float = 0.0,
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
    what: str = "call",
) -> T:
    """Run ``fn`` and re-invoke it on a transient failure, at most ``retries`` times.

    Anything not listed in ``transient`` propagates on the first failure.
    Once the bound is spent the last transient failure propagates.
    """
    lg = logger or log
    attempt = 0
    while True:
        try:
            return fn()
        except transient as e:
            if attempt >= retries:
                raise
            attempt += 1
            lg.warning("%s failed (%s: %s), retry %d/%d", what, type(e).__name__, e, attempt, retries)
            if delay_seconds > 0:
                sleep(delay_seconds)
