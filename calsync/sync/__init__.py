"""Calendar sync engine: push, webhook reconciliation and failure recovery."""
