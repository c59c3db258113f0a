"""
Put ``src`` at the front of sys.path so ``import mwl_sync`` works from a plain
checkout, without installing the package first. Done at import time because
``tests/conftest.py`` imports the package while initial conftests load.
"""
import sys
from pathlib import Path

SRC_DIR = str(Path(__file__).resolve().parent / "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
