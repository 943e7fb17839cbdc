"""Pure domain layer for the bulk engine: DTOs, lifecycle rules, validation."""
