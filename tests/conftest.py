import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Service modules read these at import time, so set them before any test imports one.
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(PROJECT_ROOT, "test_college_booking.db"),
)
os.environ.setdefault("LOCK_BACKEND", "local")
os.environ["TESTING"] = "1"
os.environ.pop("REDIS_URL", None)
