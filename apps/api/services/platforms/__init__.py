"""Shared provider plumbing: rate limiting, API execution, tokens and OAuth state."""
