"""Event delivery: outgoing outbox and incoming inbox de-duplication."""
