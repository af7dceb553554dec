"""gdl command-line entry points."""
