"""Stage execution primitives.

This package handles:
- Bounded retries with per-attempt timeouts (retry)
- External command execution with log capture (commands)
"""

from sdk_pipeline.stages.retry import RetryOutcome, RetryPolicy, run_with_retry

__all__ = ["RetryOutcome", "RetryPolicy", "run_with_retry"]
