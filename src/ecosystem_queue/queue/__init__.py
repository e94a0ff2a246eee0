"""Durable task queue: storage, rate-limit governor, executors and dispatch loops."""
