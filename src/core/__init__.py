"""Core domain: models, errors, digests, authorization."""
