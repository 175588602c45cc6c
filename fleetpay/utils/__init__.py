"""Shared utilities (configuration, logging, retry, time)."""
