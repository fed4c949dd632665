"""RippleGate - staged-gate workflow engine for ripple-aware code changes."""

__version__ = "0.3.0"
