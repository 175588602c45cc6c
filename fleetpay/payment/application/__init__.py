"""Application layer for payment allocation: input validation and services."""
