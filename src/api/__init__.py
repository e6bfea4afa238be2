"""Programmatic entry point wiring the pipeline components."""
