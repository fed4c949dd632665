"""Build verifier: opaque build command runner and diagnostic routing."""
