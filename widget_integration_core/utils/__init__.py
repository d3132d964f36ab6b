"""Shared utilities: logging, JSON, encryption, queues, metrics and backoff."""
