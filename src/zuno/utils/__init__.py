"""Logging, error and configuration utilities for Zuno."""
