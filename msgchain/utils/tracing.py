import contextlib
import logging
import time


@contextlib.contextmanager
def trace_span(name: str, **fields):
    logger = logging.getLogger("msgchain.trace")
    start = time.perf_counter()
    suffix = " ".join(f"{key}={value}" for key, value in fields.items())
    try:
        logger.info("span_start %s %s", name, suffix)
        yield
    finally:
        duration = time.perf_counter() - start
        logger.info("span_end %s duration=%.3fs", name, duration)
