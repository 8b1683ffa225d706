"""Pure domain layer for the registration kernel. ZERO I/O."""
