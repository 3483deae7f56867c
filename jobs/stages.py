"""Stage timing and logging shared by the job runners."""

import time
from contextlib import contextmanager

from core.observability.logging import log_stage_complete, log_stage_start, with_correlation
from core.observability.metrics import record_processing_time


@contextmanager
def stage(name: str, **fields):
    """Log start/finish of a pipeline stage and record its duration."""
    started = time.monotonic()
    with with_correlation(stage=name):
        log_stage_start(name, **fields)
        yield
        duration_ms = (time.monotonic() - started) * 1000
        record_processing_time(name, duration_ms)
        log_stage_complete(name, duration_ms, **fields)
