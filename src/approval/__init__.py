"""Manual approval gate."""
