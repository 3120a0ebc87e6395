"""Utility modules.

Provides:
- Structured logging setup
- Resilience helpers (timeouts, bounded fan-out)
"""

from polyarb.utils.log import configure_logging
from polyarb.utils.resilience import BoundedGather, with_timeout

__all__ = [
    "BoundedGather",
    "configure_logging",
    "with_timeout",
]
