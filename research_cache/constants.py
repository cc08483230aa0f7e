"""
Research Cache Global Constants

Centralized location for system-wide constants used across the service.
"""

import time

# Application Constants
APP_NAME = "Research Cache"
APP_VERSION = "0.1.0"

# Key layout
DEFAULT_KEY_PREFIX = "rc"
MAX_KEY_LENGTH = 250
MAX_TAG_LENGTH = 128

# Warmup is processed in fixed-size concurrent batches
WARMUP_BATCH_SIZE = 5


# Timestamp Functions
def to_millis(seconds: float) -> int:
    """Convert epoch seconds (or a duration) to integer milliseconds."""
    return int(round(seconds * 1000))


def current_time_ms(clock=time.time) -> int:
    """Read a seconds-based clock and return integer milliseconds."""
    return to_millis(clock())
