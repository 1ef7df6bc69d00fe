"""Pure domain layer: clock, roles, permission table, state machines, ledger math, DTOs."""
