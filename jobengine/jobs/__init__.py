"""
Job processing core.

This package provides the background job engine with:
- A store that owns job records and applies compare-and-transition updates
- A priority ready queue plus a time-ordered index for delayed and retrying jobs
- A promoter that surfaces jobs once they become eligible
- A bounded worker pool with per-attempt timeouts and cooperative cancellation
- Exponential backoff with jitter for retries
- Passive lifecycle statistics
"""
