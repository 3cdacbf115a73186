import sys
from pathlib import Path


# Ensure tests can import the src/ packages regardless of how pytest is invoked.
SRC = Path(__file__).resolve().parents[1] / "src"
SRC_STR = str(SRC)
if SRC_STR not in sys.path:
    sys.path.insert(0, SRC_STR)

TESTS_STR = str(Path(__file__).resolve().parent)
if TESTS_STR not in sys.path:
    sys.path.insert(0, TESTS_STR)
