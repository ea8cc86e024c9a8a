"""Custom log levels.

SUCCESS sits between INFO and WARNING so that completed guard operations
stand out on the console while still being filtered like INFO.
"""

from __future__ import annotations

import logging

SUCCESS = 25

logging.addLevelName(SUCCESS, "SUCCESS")
