"""Stage command execution and apply."""
