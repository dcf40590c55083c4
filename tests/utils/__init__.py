"""Test utilities for Zuno."""
