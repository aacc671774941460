"""Test configuration for ensuring the top-level modules import."""

import os
import sys

# The service is a set of flat modules next to this file; make them importable
# however pytest is launched.
ROOT_DIR = os.path.abspath(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)
