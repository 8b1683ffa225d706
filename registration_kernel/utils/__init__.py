"""Pure utilities shared by kernel services."""
