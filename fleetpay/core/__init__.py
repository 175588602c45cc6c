"""Cross-cutting building blocks: authorization and domain events."""
