"""Global pytest configuration."""

import os

# Tests run against the in-memory store unless a test builds its own SQL store
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("LOG_LEVEL", "DEBUG")
