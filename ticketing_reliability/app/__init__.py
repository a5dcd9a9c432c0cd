"""Process wiring: runtime construction and the worker loop."""
