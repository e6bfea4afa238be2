"""Deployment state persistence and the state lock."""
