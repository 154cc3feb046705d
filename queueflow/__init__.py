"""Queue scheduling and estimation engine for multi-tenant barbershops."""
