"""Test support utilities for worker-spark tests."""
