"""Test configuration: make the repo root importable.

Tests import the top-level packages (core, tools, ui) directly, the same way
parley.py does when run from a checkout.
"""

import os
import sys

# Add parent to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
