"""Gate state machine."""
