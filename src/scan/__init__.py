"""Pluggable checkers and verdict aggregation."""
