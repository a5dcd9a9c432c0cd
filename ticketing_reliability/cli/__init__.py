"""Operator CLI for the outbox and the job scheduler."""
