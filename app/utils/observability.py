from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator

from app.utils.request_id import request_id_var


@contextmanager
def log_duration(
    logger: Any, operation: str, *, level: int = logging.DEBUG, **fields: object
) -> Iterator[dict[str, object]]:
    """Log duration of an operation.

    Yields a mutable dict; keys added inside the block (e.g. ``result``) are logged
    with the duration. Output keeps the ``op=... key=value`` format so logs stay
    parseable without a JSON formatter.
    """
    extra: dict[str, object] = dict(fields)
    start = time.perf_counter()
    try:
        yield extra
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        rid = request_id_var.get()
        if rid and "request_id" not in extra:
            extra = {"request_id": rid, **extra}
        extras = " ".join(f"{k}={v}" for k, v in extra.items())
        if extras:
            logger.log(level, "op=%s duration_ms=%.2f %s", operation, elapsed_ms, extras)
        else:
            logger.log(level, "op=%s duration_ms=%.2f", operation, elapsed_ms)
