"""Pure domain types of the batch engine: statuses, DTOs, parameters, fault policy."""
