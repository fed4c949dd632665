"""Consumer impact tracker: which files must be re-verified after a change."""
