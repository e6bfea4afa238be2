"""Run-state-changed notifications."""
