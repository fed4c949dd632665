"""Package data: JSON schemas for RippleGate record sets and input files."""
