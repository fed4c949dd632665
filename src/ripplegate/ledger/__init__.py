"""Dependency ledger: what a change relies on and whether it is documented."""
