"""
Root conftest.py to set up Python path for pytest.

This runs before test collection, ensuring imports work correctly.
"""
import sys
import os

# Add project root to Python path FIRST
root_dir = os.path.dirname(os.path.abspath(__file__))
if root_dir not in sys.path:
    sys.path.insert(0, root_dir)
