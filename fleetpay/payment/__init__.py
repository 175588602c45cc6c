"""Payment allocation and reconciliation.

Incoming payments are split ("allocated") across settled reservations while
two conservation rules hold after every committed change:

- a payment never allocates more than its own amount
- a reservation never receives more than its total due

Architecture: domain (entities, pure rules) / application (validation,
services) / cli (thin typer adapter).
"""
