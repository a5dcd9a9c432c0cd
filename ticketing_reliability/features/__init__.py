"""Domain entry points built on the reliability core."""
